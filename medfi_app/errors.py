"""Error taxonomy for the upload and retrieval workflow.

Every error carries a stable ``kind`` string (used by the HTTP layer to pick a
status code) and a ``user_message`` that can be shown as-is. Adapters translate
transport exceptions into these at their boundary.
"""

__all__ = [
    "MedfiError",
    "ValidationError",
    "InitializationError",
    "ContentStoreError",
    "ContentStoreUnreachable",
    "ContentStoreRejected",
    "LedgerReadError",
    "ResourceNotFound",
    "LedgerSubmitError",
    "LedgerFinalityError",
    "UnsupportedLegacyFormat",
    "RetrievalExhausted",
    "IntegrityMismatch",
    "WalletError",
]


class MedfiError(Exception):
    """Base class for all workflow failures."""

    kind = "error"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message=None, *, cause=None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.cause = cause

    def to_dict(self):
        return {"error": self.kind, "message": self.user_message, "detail": self.message}


class ValidationError(MedfiError):
    """Bad input; raised before any network call."""

    kind = "validation"

    def __init__(self, message):
        super().__init__(message)
        self.user_message = message


class InitializationError(MedfiError):
    kind = "initialization"
    user_message = "Could not set up your record manager on the blockchain."


class ContentStoreError(MedfiError):
    """Upload to the content store failed."""

    kind = "content_store"
    user_message = "File upload to IPFS failed."


class ContentStoreUnreachable(ContentStoreError):
    kind = "content_store_unreachable"
    user_message = "Cannot connect to the file storage service. Please make sure it is running."


class ContentStoreRejected(ContentStoreError):
    kind = "content_store_rejected"
    user_message = "The file storage service rejected the upload."

    def __init__(self, message=None, *, status_code=None, cause=None):
        super().__init__(message, cause=cause)
        self.status_code = status_code


class LedgerReadError(MedfiError):
    kind = "ledger_read"
    user_message = "Could not read from the blockchain."


class ResourceNotFound(LedgerReadError):
    kind = "resource_not_found"
    user_message = "No record manager exists for this account yet."

    def __init__(self, address, resource_type):
        super().__init__(f"{resource_type} not found for {address}")
        self.address = address
        self.resource_type = resource_type


class LedgerSubmitError(MedfiError):
    kind = "ledger_submit"
    user_message = "The blockchain transaction could not be submitted."


class LedgerFinalityError(MedfiError):
    kind = "ledger_finality"
    user_message = "The blockchain transaction failed."

    def __init__(self, message=None, *, submission_id=None, cause=None):
        super().__init__(message, cause=cause)
        self.submission_id = submission_id


class UnsupportedLegacyFormat(MedfiError):
    """Reference predates IPFS storage; nothing on the network can satisfy it."""

    kind = "legacy_format"
    user_message = (
        "This older record can't be fetched. It was created before files were stored "
        "on IPFS, so only a fingerprint of the file was saved."
    )

    def __init__(self, content_ref):
        super().__init__(f"Legacy content hash is not retrievable: {content_ref}")
        self.content_ref = content_ref


class RetrievalExhausted(MedfiError):
    kind = "retrieval_exhausted"
    user_message = "This file is temporarily unavailable. Please try again later."

    def __init__(self, content_ref, *, last_gateway=None, last_status=None, last_error=None):
        detail = last_error if last_error else f"status {last_status}"
        super().__init__(
            f"Failed to fetch {content_ref} from all IPFS gateways. "
            f"Last gateway {last_gateway}: {detail}"
        )
        self.content_ref = content_ref
        self.last_gateway = last_gateway
        self.last_status = last_status
        self.last_error = last_error


class IntegrityMismatch(MedfiError):
    kind = "integrity_mismatch"
    user_message = "The downloaded file did not match its content identifier."

    def __init__(self, content_ref, *, gateway=None, expected=None, actual=None):
        super().__init__(f"Digest mismatch for {content_ref} from {gateway}: expected {expected}, got {actual}")
        self.content_ref = content_ref
        self.gateway = gateway
        self.expected = expected
        self.actual = actual


class WalletError(MedfiError):
    kind = "wallet"
    user_message = "Wallet not connected."
