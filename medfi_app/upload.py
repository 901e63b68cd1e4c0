# medfi_app/upload.py
"""Local file + symptoms/diagnosis -> pinned content -> finalized ledger record."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from medfi_app.content_ref import is_ipfs_hash
from medfi_app.errors import (
    ContentStoreRejected,
    InitializationError,
    LedgerFinalityError,
    LedgerSubmitError,
    ValidationError,
)
from medfi_app.ledger import RECORD_MANAGER
from medfi_app.records import Record

logger = logging.getLogger(__name__)


def iso_now():
    """UTC ISO-8601 with milliseconds and a 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class UploadFile:
    filename: str
    data: bytes
    content_type: str = None


@dataclass(frozen=True)
class UploadResult:
    record: Record
    file_name: str
    submission_id: str
    initialized: bool = False


class UploadCoordinator:
    def __init__(self, ledger, store, refresh=None, last_upload=None, clock=iso_now):
        self.ledger = ledger
        self.store = store
        self.refresh = refresh
        self.last_upload = last_upload
        self.clock = clock

    def _manager_exists(self, address):
        return self.ledger.resource_exists(address, RECORD_MANAGER)

    def ensure_initialized(self, account):
        """Creates the account's record manager if missing.

        Returns True if this call initialized it, False if it already existed.
        A failed ``initialize`` whose manager turns out to exist (another upload
        won the race) counts as already initialized.
        """
        if self._manager_exists(account.address):
            logger.info("%s already exists for address: %s", RECORD_MANAGER, account.address)
            return False

        logger.info("Initializing %s for address: %s", RECORD_MANAGER, account.address)
        try:
            submission_id = self.ledger.submit(account, "initialize", [])
            finality = self.ledger.wait_for_finality(submission_id)
        except (LedgerSubmitError, LedgerFinalityError) as e:
            if self._manager_exists(account.address):
                logger.info("%s was created concurrently for %s", RECORD_MANAGER, account.address)
                return False
            raise InitializationError(f"Initialization failed: {e.message}", cause=e) from e

        if not finality.success:
            if self._manager_exists(account.address):
                logger.info("%s already exists for %s (initialize reverted)", RECORD_MANAGER, account.address)
                return False
            raise InitializationError(f"Initialization transaction {submission_id} failed")

        logger.info("%s initialized successfully", RECORD_MANAGER)
        return True

    @staticmethod
    def _validate(symptoms, diagnosis, file):
        if file is None or not isinstance(file.data, (bytes, bytearray)) or len(file.data) == 0:
            raise ValidationError("Please select a file to upload")
        if not isinstance(symptoms, str) or not symptoms.strip():
            raise ValidationError("Symptoms are required")
        if not isinstance(diagnosis, str) or not diagnosis.strip():
            raise ValidationError("Diagnosis is required")

    def upload(self, owner_account, symptoms, diagnosis, file):
        self._validate(symptoms, diagnosis, file)

        # 1. One-time account setup
        initialized = self.ensure_initialized(owner_account)

        # 2. Off-chain storage; must yield a CID before anything is written on chain
        pinned = self.store.pin_file(file.filename, bytes(file.data), file.content_type)
        if not pinned.content_id or not is_ipfs_hash(pinned.content_id):
            raise ContentStoreRejected(f"Content store returned an invalid identifier: {pinned.content_id!r}")

        # 3. Append the record
        record = Record(
            owner_id=owner_account.address,
            timestamp=self.clock(),
            symptoms=symptoms,
            diagnosis=diagnosis,
            content_ref=pinned.content_id,
        )
        logger.info("Adding record for %s, CID: %s", owner_account.address, record.content_ref)
        submission_id = self.ledger.submit(owner_account, "addRecord", record.to_ledger_args())
        finality = self.ledger.wait_for_finality(submission_id)
        if not finality.success:
            # The pinned content stays orphaned; nothing references it
            raise LedgerFinalityError(f"Transaction {submission_id} failed", submission_id=submission_id)

        # 4. Tell other views there is new data
        if self.last_upload is not None:
            self.last_upload.set(record.timestamp)
        if self.refresh is not None:
            self.refresh.publish(record.timestamp)

        logger.info("Record uploaded successfully! File: %s", pinned.file_name)
        return UploadResult(record, pinned.file_name, submission_id, initialized)
