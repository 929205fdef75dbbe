"""Attachment handling on top of a :class:`~docflow.storage.StorageBackend`.

Uploaded files arrive as temporary local files.  They are renamed to a
unique ``<base>_<timestamp><ext>`` name, pushed to the store and always
removed locally afterwards, whether the upload worked or not.  A failed
upload raises :class:`~docflow.errors.FileStoreError` so the enclosing save
is abandoned; a failed delete is only logged.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from docflow.errors import FileStoreError
from docflow.models import DocumentKind
from docflow.storage import StorageBackend, _env

logger = logging.getLogger(__name__)

DEFAULT_FOLDER = "/Documents"


@dataclass(frozen=True)
class IncomingFile:
    """A file received from the client and saved to ``local_path``."""

    local_path: str
    filename: str


def folder_for(kind) -> str:
    kind = DocumentKind(kind)
    return _env(f"storage.folder_{kind.value}", DEFAULT_FOLDER) or DEFAULT_FOLDER


def unique_name(filename: str, when: datetime | None = None) -> str:
    when = when or datetime.now(timezone.utc)
    base, ext = os.path.splitext(os.path.basename(filename))
    stamp = (
        when.astimezone(timezone.utc)
        .replace(tzinfo=None)
        .isoformat(timespec="milliseconds")
        .replace(":", "-")
        .replace(".", "-")
    )
    return f"{base}_{stamp}{ext}"


def _remove_temp(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Could not remove temporary file %s", path, exc_info=True)


def upload_file(store: StorageBackend, incoming: IncomingFile, folder: str) -> dict:
    name = unique_name(incoming.filename)
    try:
        result = store.upload(incoming.local_path, folder, name)
    except Exception as exc:
        logger.exception("Upload of %s to %s failed", incoming.filename, folder)
        raise FileStoreError(f"Could not upload {incoming.filename}") from exc
    finally:
        _remove_temp(incoming.local_path)
    return {
        "driveFileId": result.path,
        "name": name,
        "displayName": incoming.filename,
        "actualFilename": name,
        "link": result.download_url,
        "path": result.path,
        "size": result.size,
        "mimeType": result.mime_type,
        "uploadTimestamp": datetime.now(timezone.utc).isoformat(),
    }


def upload_files(
    store: StorageBackend, files: Iterable[IncomingFile], folder: str
) -> list[dict]:
    """Upload every file or none; already stored files are removed on failure."""

    files = list(files)
    descriptors: list[dict] = []
    try:
        for incoming in files:
            descriptors.append(upload_file(store, incoming, folder))
    except FileStoreError:
        delete_files(store, descriptors)
        for incoming in files:
            _remove_temp(incoming.local_path)
        raise
    return descriptors


def delete_file(store: StorageBackend, descriptor: dict | None) -> bool:
    if not descriptor or not descriptor.get("path"):
        return False
    try:
        store.delete(descriptor["path"])
    except Exception:
        logger.exception("Failed to delete %s from file store", descriptor["path"])
        return False
    return True


def delete_files(store: StorageBackend, descriptors: Iterable[dict] | None) -> int:
    return sum(1 for d in descriptors or [] if delete_file(store, d))
