from __future__ import annotations

from hashlib import md5
from typing import Protocol

__all__ = ["ObjectKeyBuilder", "derive_object_key", "extension_for"]


class ObjectKeyBuilder(Protocol):
    def __call__(self, specimen_code: str, specimen_id: int, upload_id: str, extension: str) -> str: ...


def extension_for(content_type: str) -> str:
    """``image/jpeg`` -> ``jpeg``."""
    return content_type.split("/", 1)[-1].split(";", 1)[0].strip().lower()


def derive_object_key(specimen_code: str, specimen_id: int, upload_id: str, extension: str) -> str:
    """Return ``specimens/<code>/<md5("<specimen_id>-<upload_id>")>.<extension>``."""
    token = md5(f"{specimen_id}-{upload_id}".encode("utf-8"), usedforsecurity=False).hexdigest()
    return f"specimens/{specimen_code}/{token}.{extension}"
