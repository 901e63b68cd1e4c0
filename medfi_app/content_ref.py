# medfi_app/content_ref.py
"""Content reference helpers: classification, legacy hashes, digest checks."""

import base64
import binascii
import hashlib
from enum import Enum


class ContentRefKind(str, Enum):
    CID_V0 = "CID_V0"
    CID_V1 = "CID_V1"
    LEGACY_HASH = "LEGACY_HASH"


CID_V0_PREFIX = "Qm"
CID_V1_PREFIXES = ("bafy", "bafk")

# Multicodec / multihash codes we understand for the integrity check
RAW_CODEC = 0x55
SHA2_256 = 0x12

LEGACY_EXPLANATION = (
    "This record was created with the old upload system that only stored file "
    "content hashes, not actual IPFS files. These files cannot be downloaded. "
    "New uploads will work correctly with real IPFS storage."
)

MIME_EXTENSIONS = {
    "application/pdf": ".pdf",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "text/plain": ".txt",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/zip": ".zip",
    "application/x-zip-compressed": ".zip",
}


def classify(content_ref):
    """Tags a reference purely by prefix; no network check."""
    if content_ref.startswith(CID_V0_PREFIX):
        return ContentRefKind.CID_V0
    if content_ref.startswith(CID_V1_PREFIXES):
        return ContentRefKind.CID_V1
    return ContentRefKind.LEGACY_HASH


def is_ipfs_hash(content_ref):
    return classify(content_ref) is not ContentRefKind.LEGACY_HASH


def explain(content_ref):
    """User-facing summary of whether a reference can ever be downloaded."""
    if is_ipfs_hash(content_ref):
        return {"is_valid": True, "is_legacy": False, "error": None, "explanation": None}
    return {
        "is_valid": False,
        "is_legacy": True,
        "error": "Old file format detected",
        "explanation": LEGACY_EXPLANATION,
    }


def legacy_file_hash(data):
    """SHA-256 hex digest of file bytes, as the pre-IPFS client stored it."""
    return hashlib.sha256(data).hexdigest()


def extension_from_mime(mime_type):
    if not mime_type:
        return ".bin"
    # Drop parameters such as "; charset=utf-8"
    return MIME_EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), ".bin")


def default_filename(content_ref, mime_type):
    return f"medical_record_{content_ref[:8]}{extension_from_mime(mime_type)}"


# --- Integrity check ---

def _read_varint(buf, pos):
    value = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise ValueError("truncated varint")
        byte = buf[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7


def expected_sha256(content_ref):
    """Embedded sha2-256 digest for refs whose digest covers the raw file bytes.

    Only CIDv1 with the raw codec (the ``bafk...`` form) qualifies. dag-pb CIDs
    (``Qm...``, ``bafy...``) hash a UnixFS node, so None is returned for them and
    for anything that fails to parse.
    """
    if classify(content_ref) is not ContentRefKind.CID_V1 or not content_ref.startswith("b"):
        return None
    encoded = content_ref[1:].upper()
    encoded += "=" * (-len(encoded) % 8)
    try:
        raw = base64.b32decode(encoded)
        version, pos = _read_varint(raw, 0)
        codec, pos = _read_varint(raw, pos)
        hash_code, pos = _read_varint(raw, pos)
        length, pos = _read_varint(raw, pos)
    except (binascii.Error, ValueError):
        return None
    if version != 1 or codec != RAW_CODEC or hash_code != SHA2_256:
        return None
    digest = raw[pos:pos + length]
    if len(digest) != length:
        return None
    return digest.hex()


def verify_content(content_ref, data):
    """Returns (verifiable, matches, actual_hex). Unverifiable refs always 'match'."""
    expected = expected_sha256(content_ref)
    if expected is None:
        return False, True, None
    actual = hashlib.sha256(data).hexdigest()
    return True, actual == expected, actual
