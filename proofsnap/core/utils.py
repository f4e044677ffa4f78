import base64
import binascii
import hashlib
import os
import re
import uuid
import structlog
from datetime import datetime, timezone
from typing import Union

from proofsnap.core.errors import ValidationError

logger = structlog.get_logger()

__all__ = [
    "DIGEST_SIZE",
    "hash_content",
    "hash_file",
    "digest_to_hex",
    "parse_digest",
    "looks_like_digest",
    "decode_base64_content",
    "new_record_id",
    "format_file_size",
    "sanitize_filename",
    "create_media_storage_path",
]

DIGEST_SIZE = 32
_DIGEST_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def hash_content(content: bytes) -> bytes:
    """
    Canonical digest of media content.

    SHA-256 over the raw decoded bytes. Any transport encoding (base64 and
    the like) must be removed before calling this; minting and verifying
    both hash the same raw bytes. Empty input is hashed, not rejected.
    """
    return hashlib.sha256(bytes(content)).digest()


def hash_file(file_path: str) -> bytes:
    """Canonical digest of a file on disk, read in chunks."""
    hash_obj = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hash_obj.update(chunk)
    return hash_obj.digest()


def digest_to_hex(digest: bytes) -> str:
    """Render a digest the way the ledger and the API carry it: 0x + lowercase hex."""
    if len(digest) != DIGEST_SIZE:
        raise ValidationError(f"Digest must be {DIGEST_SIZE} bytes, got {len(digest)}")
    return "0x" + digest.hex()


def looks_like_digest(value: str) -> bool:
    return bool(value) and bool(_DIGEST_HEX_RE.match(value))


def parse_digest(value: Union[str, bytes]) -> bytes:
    """Accept a digest as raw bytes or hex (with or without 0x) and return raw bytes."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != DIGEST_SIZE:
            raise ValidationError(f"Digest must be {DIGEST_SIZE} bytes, got {len(value)}")
        return bytes(value)
    if not looks_like_digest(value):
        raise ValidationError("Digest must be 64 hex characters", details={"value": value})
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def decode_base64_content(encoded: str) -> bytes:
    """Decode base64 media from a JSON body into the raw bytes that get hashed."""
    if encoded is None:
        raise ValidationError("Content is required")
    # Tolerate data URLs sent by mobile clients
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Content is not valid base64: {e}")


def new_record_id() -> str:
    """Generate a new unique index record ID."""
    return str(uuid.uuid4())


def format_file_size(size_bytes: int) -> str:
    """Format file size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    size = float(size_bytes)
    while size >= 1024 and i < len(size_names) - 1:
        size /= 1024.0
        i += 1

    return f"{size:.1f} {size_names[i]}"


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safe storage."""
    if not filename:
        return "unnamed_file"

    # Keep only alphanumeric, dots, dashes, underscores
    sanitized = re.sub(r'[^\w\-_\.]', '_', filename)
    sanitized = re.sub(r'_{2,}', '_', sanitized)

    # Ensure it doesn't start with a dot (hidden file)
    if sanitized.startswith('.'):
        sanitized = 'file_' + sanitized

    if len(sanitized) > 255:
        name, ext = os.path.splitext(sanitized)
        sanitized = name[:255 - len(ext)] + ext

    return sanitized


def create_media_storage_path(filename: str) -> str:
    """Storage path structure: year/month/filename."""
    now = datetime.now(timezone.utc)
    return f"{now.strftime('%Y')}/{now.strftime('%m')}/{sanitize_filename(filename)}"
