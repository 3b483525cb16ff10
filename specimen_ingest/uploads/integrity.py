from __future__ import annotations

import re
from dataclasses import dataclass
from hashlib import md5
from pathlib import Path
from typing import Iterable, Optional

from specimen_ingest.core.storage import BlobStore

from .errors import ContentIntegrityError, InvalidArgument

__all__ = [
    "HASH_ALGO",
    "HASH_HEX_LENGTH",
    "VerifiedObject",
    "validate_content_hash",
    "compute_md5",
    "compute_file_md5",
    "hash_stored_object",
    "ensure_hash_matches",
]

HASH_ALGO = "md5"
HASH_HEX_LENGTH = 32

_HEX_DIGEST = re.compile(rf"^[a-f0-9]{{{HASH_HEX_LENGTH}}}$")


@dataclass(slots=True)
class VerifiedObject:
    """A stored object together with the digest recomputed from its bytes."""

    storage_key: str
    content_hash: str
    size_bytes: int


def validate_content_hash(value: Optional[str]) -> str:
    """Return ``value`` if it is a lowercase hex MD5 digest, else raise InvalidArgument."""
    if value is None or not _HEX_DIGEST.match(value):
        raise InvalidArgument(
            "contentHash must be a lowercase hex MD5 digest",
            expected_length=HASH_HEX_LENGTH,
            received=value,
        )
    return value


def compute_md5(chunks: Iterable[bytes]) -> tuple[str, int]:
    """Digest an iterable of byte chunks.

    Returns:
        The hex digest and the total number of bytes consumed.
    """
    digest = md5(usedforsecurity=False)
    total = 0
    for chunk in chunks:
        digest.update(chunk)
        total += len(chunk)
    return digest.hexdigest(), total


def compute_file_md5(path: Path, *, chunk_size: int = 8 * 1024 * 1024) -> str:
    """Return the hex MD5 a client should declare for ``path``."""
    with path.open("rb") as handle:
        digest, _ = compute_md5(iter(lambda: handle.read(chunk_size), b""))
    return digest


def hash_stored_object(store: BlobStore, key: str) -> VerifiedObject:
    """Stream an assembled object back from the store and recompute its digest.

    Blocking; call through ``asyncio.to_thread``.
    """
    digest, size = compute_md5(store.iter_bytes(key))
    return VerifiedObject(storage_key=key, content_hash=digest, size_bytes=size)


def ensure_hash_matches(declared: str, recomputed: str) -> None:
    if declared != recomputed:
        raise ContentIntegrityError(expected=declared, received=recomputed)
