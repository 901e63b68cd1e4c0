# medfi_app/records.py

import logging
from dataclasses import asdict, dataclass
from enum import Enum

from medfi_app.content_ref import classify
from medfi_app.errors import LedgerReadError, ResourceNotFound, ValidationError
from medfi_app.ledger import RECORD_MANAGER

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Record:
    owner_id: str
    timestamp: str
    symptoms: str
    diagnosis: str
    content_ref: str
    # Declared for forward compatibility; the write path never fills these
    version: int = None
    modified_at: str = None
    modified_by: str = None
    original_filename: str = None

    @classmethod
    def from_ledger(cls, entry):
        return cls(
            owner_id=entry.get("client_id", ""),
            timestamp=entry.get("date", ""),
            symptoms=entry.get("symptoms", ""),
            diagnosis=entry.get("diagnosis", ""),
            content_ref=entry.get("treatment", ""),
        )

    def to_ledger_args(self):
        """Argument order of RecordManager.addRecord."""
        return [self.owner_id, self.timestamp, self.symptoms, self.diagnosis, self.content_ref]

    def to_dict(self):
        data = asdict(self)
        data["content_kind"] = classify(self.content_ref).value
        return data


class RecordScope(str, Enum):
    OWNER = "owner"
    SHARED = "shared"


class RecordService:
    """Read side of the record manager: listings and statistics."""

    def __init__(self, ledger, scope=RecordScope.OWNER, shared_address=None):
        self.ledger = ledger
        self.scope = RecordScope(scope)
        self.shared_address = shared_address or getattr(ledger, "contract_address", None)

    def _read(self, address):
        try:
            resource = self.ledger.read_resource(address, RECORD_MANAGER)
        except ResourceNotFound:
            logger.info("No %s found for address: %s", RECORD_MANAGER, address)
            return []
        entries = resource.get("records") if isinstance(resource, dict) else None
        if not isinstance(entries, list):
            logger.warning("Resource for %s does not contain records: %r", address, resource)
            return []
        return [Record.from_ledger(e) for e in entries]

    def all_records(self):
        if not self.shared_address:
            raise LedgerReadError("Contract address is not configured.")
        return self._read(self.shared_address)

    def list_records(self, address):
        """Records visible to ``address`` under the configured scope."""
        if not address:
            raise ValidationError("Wallet not connected")
        if self.scope is RecordScope.SHARED:
            return self.all_records()
        return self._read(address)

    def account_stats(self, address):
        records = self.list_records(address)
        return {
            "totalRecords": len(records),
            "lastUploadDate": records[-1].timestamp if records else None,
        }

    def global_stats(self):
        records = self.all_records()
        return {
            "totalRecords": len(records),
            "totalAccounts": len({r.owner_id.lower() for r in records if r.owner_id}),
        }
