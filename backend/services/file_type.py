# services/file_type.py
"""
Content-based file type checks.

The declared MIME type of an upload comes from the client and is untrusted.
The first chunk of every upload is sniffed with libmagic (python-magic) and
compared against the declared type:

- image/* and video/* are compared by category only
- content without a reliable signature (plain text, JSON, unknown binary)
  is accepted only when the declared type is text-like
- anything else must match exactly
"""
from typing import Optional

import magic

from models.errors import TypeMismatch

SNIFF_BYTES = 8192

# libmagic answers for content it cannot pin to a real signature
UNSIGNED_MIME_TYPES = {
    "application/octet-stream",
    "application/x-empty",
    "inode/x-empty",
    "application/json",
}

TEXT_LIKE_TYPES = ("text/", "application/json")
CATEGORY_PREFIXES = ("image/", "video/")

_magic = magic.Magic(mime=True)


def detect_mime_type(buffer: bytes) -> Optional[str]:
    """Return the sniffed MIME type, or None when the bytes carry no usable signature"""
    if not buffer:
        return None
    mime_type = _magic.from_buffer(buffer[:SNIFF_BYTES])
    if not mime_type or mime_type in UNSIGNED_MIME_TYPES or mime_type.startswith("text/"):
        return None
    return mime_type


def is_text_like(declared_type: str) -> bool:
    return any(marker in declared_type for marker in TEXT_LIKE_TYPES)


def validate_file_type(buffer: bytes, declared_type: str) -> bool:
    """Check the leading bytes of a file against its declared MIME type"""
    detected = detect_mime_type(buffer)
    if detected is None:
        return is_text_like(declared_type)

    for prefix in CATEGORY_PREFIXES:
        if declared_type.startswith(prefix):
            return detected.startswith(prefix)

    return detected == declared_type


def check_file_type(buffer: bytes, declared_type: str) -> None:
    """Raise TypeMismatch when validate_file_type rejects the bytes"""
    if not validate_file_type(buffer, declared_type):
        raise TypeMismatch(declared_type, detect_mime_type(buffer))
