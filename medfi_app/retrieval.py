# medfi_app/retrieval.py
"""Resolve content references to bytes through an ordered list of IPFS gateways."""

import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field

import requests

from medfi_app.content_ref import (
    ContentRefKind,
    classify,
    default_filename,
    expected_sha256,
    explain,
    extension_from_mime,
    verify_content,
)
from medfi_app.errors import IntegrityMismatch, RetrievalExhausted, UnsupportedLegacyFormat

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_FILENAME_RE = re.compile(r"""filename[^;=\n]*=((['"]).*?\2|[^;\n]*)""")


def _is_success(status_code):
    return 200 <= status_code < 300


@dataclass(frozen=True)
class GatewayStatus:
    status: int
    error: str = None

    def to_dict(self):
        data = {"status": self.status}
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class ValidationReport:
    content_ref: str
    is_valid: bool
    gateways: dict = field(default_factory=dict)
    is_legacy: bool = False
    error: str = None
    explanation: str = None

    def to_dict(self):
        return {
            "contentRef": self.content_ref,
            "isValid": self.is_valid,
            "isOldFormat": self.is_legacy,
            "error": self.error,
            "explanation": self.explanation,
            "gateways": {base: status.to_dict() for base, status in self.gateways.items()},
        }


@dataclass(frozen=True)
class RetrievedContent:
    content_ref: str
    data: bytes
    content_type: str
    gateway: str
    content_disposition: str = None
    verified: bool = False

    def suggested_filename(self):
        """Content-Disposition filename, else medical_record_<ref[:8]><ext>."""
        if self.content_disposition:
            match = _FILENAME_RE.search(self.content_disposition)
            if match and match.group(1):
                name = match.group(1).replace('"', "").replace("'", "").strip()
                if name:
                    return name
        return default_filename(self.content_ref, self.content_type)

    @contextmanager
    def materialize(self):
        """Writes the bytes to a temporary file for the duration of the block."""
        fd, path = tempfile.mkstemp(prefix="medfi_", suffix=extension_from_mime(self.content_type))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(self.data)
            yield path
        finally:
            if os.path.exists(path):
                os.remove(path)


class RetrievalResolver:
    def __init__(self, gateways, session=None, timeout=10, verify_integrity=True):
        if not gateways:
            raise ValueError("At least one IPFS gateway is required")
        self.gateways = [g if g.endswith("/") else g + "/" for g in gateways]
        self.http = session or requests.Session()
        self.timeout = timeout
        self.verify_integrity = verify_integrity

    @staticmethod
    def _reject_legacy(content_ref):
        if classify(content_ref) is ContentRefKind.LEGACY_HASH:
            raise UnsupportedLegacyFormat(content_ref)

    def resolve(self, content_ref):
        """Fetches ``content_ref`` from the first gateway that serves it."""
        # No network location can satisfy a hash that was never stored
        self._reject_legacy(content_ref)

        last_gateway = last_status = last_error = None
        mismatch = None
        for base in self.gateways:
            url = base + content_ref
            last_gateway = base
            logger.debug("Trying gateway: %s", url)
            try:
                response = self.http.get(url, headers={"Accept": "*/*"}, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                logger.info("Gateway %s failed with error: %s", base, e)
                last_status, last_error = None, str(e)
                continue

            if not _is_success(response.status_code):
                logger.info("Gateway %s failed with status: %s", base, response.status_code)
                last_status, last_error = response.status_code, None
                continue

            data = response.content
            verified = False
            if self.verify_integrity:
                verified, matches, actual = verify_content(content_ref, data)
                if not matches:
                    mismatch = IntegrityMismatch(content_ref, gateway=base, expected=expected_sha256(content_ref), actual=actual)
                    logger.warning("Gateway %s served bytes that do not match %s", base, content_ref)
                    last_status, last_error = response.status_code, mismatch.message
                    continue

            logger.info("Successfully fetched %s from gateway: %s", content_ref, base)
            return RetrievedContent(
                content_ref=content_ref,
                data=data,
                content_type=response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE,
                gateway=base,
                content_disposition=response.headers.get("Content-Disposition"),
                verified=verified,
            )

        if mismatch is not None:
            # Content exists somewhere but every copy we got was corrupt
            raise mismatch
        raise RetrievalExhausted(content_ref, last_gateway=last_gateway,
                                 last_status=last_status, last_error=last_error)

    def validate(self, content_ref):
        """HEAD-probes every gateway; diagnostic only."""
        hash_check = explain(content_ref)
        if hash_check["is_legacy"]:
            return ValidationReport(
                content_ref=content_ref,
                is_valid=False,
                is_legacy=True,
                error=hash_check["error"],
                explanation=hash_check["explanation"],
            )

        results = {}
        for base in self.gateways:
            url = base + content_ref
            try:
                response = self.http.head(url, timeout=self.timeout, allow_redirects=True)
                results[base] = GatewayStatus(response.status_code)
            except requests.exceptions.RequestException as e:
                results[base] = GatewayStatus(0, str(e))

        has_working_gateway = any(r.status == 200 for r in results.values())
        return ValidationReport(
            content_ref=content_ref,
            is_valid=has_working_gateway,
            gateways=results,
            error=None if has_working_gateway else "No working IPFS gateway found",
        )
