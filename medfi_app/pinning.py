# medfi_app/pinning.py
"""Content store clients: Pinata directly, or this app's own /api/upload ingress."""

import json
import logging
from dataclasses import dataclass

import requests
from werkzeug.utils import secure_filename

from medfi_app.content_ref import is_ipfs_hash
from medfi_app.errors import ContentStoreRejected, ContentStoreUnreachable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PinResult:
    content_id: str
    file_name: str


def _reports_unreachable(response):
    """True when a non-2xx response means the store (or what it fronts) is down."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    kind = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(kind, str) and kind.startswith("content_store"):
        # Our own ingress names the failure explicitly
        return kind == ContentStoreUnreachable.kind
    return response.status_code >= 500


def _error_text(response):
    """Best-effort message out of an error response body."""
    try:
        payload = response.json()
    except ValueError:
        return response.reason or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("message") or payload.get("error")
        if isinstance(error, dict):
            # Pinata nests {"error": {"reason": ..., "details": ...}}
            error = error.get("details") or error.get("reason")
        if error:
            return str(error)
    return response.reason or f"HTTP {response.status_code}"


class _HTTPStore:
    name = "content store"

    def __init__(self, url, timeout, session=None):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    def _post(self, filename, data, content_type=None, headers=None, extra=None):
        safe_name = secure_filename(filename) or "upload.bin"
        if content_type:
            files_payload = {"file": (safe_name, data, content_type)}
        else:
            files_payload = {"file": (safe_name, data)}
        logger.info("Uploading file '%s' (%d bytes) to %s...", safe_name, len(data), self.name)
        try:
            response = self.http.post(self.url, files=files_payload, data=extra, headers=headers, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error("%s unreachable at %s: %s", self.name, self.url, e)
            raise ContentStoreUnreachable(f"Cannot connect to {self.name} at {self.url}: {e}", cause=e) from e
        except requests.exceptions.RequestException as e:
            logger.error("%s request failed: %s", self.name, e)
            raise ContentStoreUnreachable(f"Request to {self.name} failed: {e}", cause=e) from e

        if not 200 <= response.status_code < 300:
            message = _error_text(response)
            if _reports_unreachable(response):
                logger.error("%s unavailable: %s | Status: %s", self.name, message, response.status_code)
                raise ContentStoreUnreachable(f"{self.name} unavailable: {message}")
            logger.error("%s rejected upload: %s | Status: %s", self.name, message, response.status_code)
            raise ContentStoreRejected(f"{self.name} rejected upload: {message}", status_code=response.status_code)

        try:
            return safe_name, response.json()
        except ValueError as e:
            raise ContentStoreRejected(f"{self.name} returned a non-JSON response",
                                       status_code=response.status_code, cause=e) from e

    @staticmethod
    def _checked(content_id, file_name, source):
        if not content_id or not is_ipfs_hash(content_id):
            raise ContentStoreRejected(f"{source} upload failed: no valid content identifier in response ({content_id!r})")
        logger.info("File pinned via %s. CID: %s", source, content_id)
        return PinResult(content_id, file_name)


class PinataStore(_HTTPStore):
    """Pins files through Pinata's pinFileToIPFS endpoint."""

    name = "Pinata"

    def __init__(self, api_key, secret_api_key, api_url, timeout=120, session=None):
        super().__init__(api_url, timeout, session)
        self.api_key = api_key
        self.secret_api_key = secret_api_key

    def pin_file(self, filename, data, content_type=None):
        if not self.api_key or not self.secret_api_key:
            raise ContentStoreRejected("Server configuration error: Pinata API keys not set.")
        headers = {"pinata_api_key": self.api_key, "pinata_secret_api_key": self.secret_api_key}
        metadata = {"pinataMetadata": json.dumps({"name": filename})}
        try:
            safe_name, result = self._post(filename, data, content_type, headers=headers, extra=metadata)
        except ContentStoreRejected as e:
            if e.status_code == 401:
                raise ContentStoreRejected("Pinata authentication failed. Check API keys.", status_code=401) from e
            raise
        return self._checked(result.get("IpfsHash"), filename or safe_name, self.name)


class IngressStore(_HTTPStore):
    """Client for a running /api/upload ingress ({contentId, fileName})."""

    name = "upload service"

    def pin_file(self, filename, data, content_type=None):
        _, result = self._post(filename, data, content_type)
        return self._checked(result.get("contentId"), result.get("fileName") or filename, self.name)
