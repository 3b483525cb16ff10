"""Upload building blocks: error taxonomy, integrity checks, key derivation and part buffering."""

from .buffering import AppendOutcome, BufferFlushController, PartBufferState
from .errors import (
    Conflict,
    ContentIntegrityError,
    InvalidArgument,
    InvalidState,
    NotFound,
    Unavailable,
    UploadError,
)
from .integrity import VerifiedObject, compute_file_md5, ensure_hash_matches, hash_stored_object, validate_content_hash
from .keys import ObjectKeyBuilder, derive_object_key, extension_for

__all__ = [
    "AppendOutcome",
    "BufferFlushController",
    "PartBufferState",
    "UploadError",
    "InvalidArgument",
    "InvalidState",
    "NotFound",
    "Conflict",
    "ContentIntegrityError",
    "Unavailable",
    "VerifiedObject",
    "compute_file_md5",
    "ensure_hash_matches",
    "hash_stored_object",
    "validate_content_hash",
    "ObjectKeyBuilder",
    "derive_object_key",
    "extension_for",
]
