"""Pluggable file stores for document attachments.

Attachments are blobs addressed by a path such as
``/Documents/Payment/invoice_2024-01-02T03-04-05-678.pdf``.  Every backend
implements :class:`StorageBackend`: ``upload`` stores a local file and
returns a permanent download URL, ``delete`` removes it again.

``WebDAVBackend``
    Nextcloud over WebDAV.  Download links are public shares; when sharing
    is unavailable the authenticated WebDAV URL is returned instead, so an
    upload always yields some URL.

``S3Backend``
    MinIO or any S3 compatible service.

``FSBackend``
    A local directory served by the web server under a public prefix.

The backend is chosen once by :func:`load_backend` and passed to the code
that needs it.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote
from xml.etree import ElementTree

import boto3
import requests
from botocore.client import Config

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def _env(name: str, default: str | None = None) -> str | None:
    """Fetch configuration values using ``storage.foo`` style names.

    Environment variables use ``STORAGE__FOO`` to mirror nested configuration.
    """

    return os.getenv(name.replace(".", "__").upper(), default)


def guess_mime_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or DEFAULT_MIME_TYPE


def join_path(folder: str, name: str) -> str:
    return f"{folder.rstrip('/')}/{name}"


@dataclass(frozen=True)
class UploadResult:
    path: str
    download_url: str
    size: int
    mime_type: str


class StorageBackend:
    """Simple interface all storage backends must implement."""

    def upload(
        self, local_path: str, target_folder: str, desired_name: str
    ) -> UploadResult:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete(self, path: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class WebDAVBackend(StorageBackend):
    """Nextcloud storage accessed over WebDAV with OCS public shares."""

    SHARE_TYPE_PUBLIC_LINK = 3
    OCS_HEADERS = {"OCS-APIRequest": "true", "Accept": "application/json"}

    def __init__(
        self,
        base_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ) -> None:
        self.username = username or os.getenv("NEXTCLOUD_USERNAME", "")
        password = password or os.getenv("NEXTCLOUD_PASSWORD", "")
        self.base_url = (
            base_url
            or os.getenv("NEXTCLOUD_WEBDAV_URL")
            or f"{os.getenv('NEXTCLOUD_URL', 'http://localhost')}"
            f"/remote.php/dav/files/{self.username}"
        ).rstrip("/")
        self.timeout = timeout or float(_env("storage.timeout", "60") or "60")
        # a Session keeps Nextcloud's session cookies between requests
        self.http = session or requests.Session()
        self.http.auth = (self.username, password)

    # helpers -----------------------------------------------------------
    @property
    def server_url(self) -> str:
        """Nextcloud root, without the ``remote.php/dav`` suffix."""

        return self.base_url.replace(f"/remote.php/dav/files/{self.username}", "")

    def _dav_url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def direct_download_url(self, path: str) -> str:
        return f"{self.base_url}/{quote(path, safe='')}"

    # primitives --------------------------------------------------------
    def ensure_directory(self, path: str) -> None:
        resp = self.http.request("MKCOL", self._dav_url(path), timeout=self.timeout)
        # 405: the collection already exists
        if resp.status_code == 405:
            return
        resp.raise_for_status()

    def upload(self, local_path: str, target_folder: str, desired_name: str) -> UploadResult:
        self.ensure_directory(target_folder)
        remote_path = join_path(target_folder, desired_name)
        with open(local_path, "rb") as fh:
            resp = self.http.put(
                self._dav_url(remote_path),
                data=fh,
                headers={"Content-Type": DEFAULT_MIME_TYPE},
                timeout=self.timeout,
            )
        resp.raise_for_status()
        return UploadResult(
            path=remote_path,
            download_url=self.ensure_permanent_share(remote_path),
            size=os.path.getsize(local_path),
            mime_type=guess_mime_type(desired_name),
        )

    def delete(self, path: str) -> None:
        resp = self.http.delete(self._dav_url(path), timeout=self.timeout)
        resp.raise_for_status()

    # sharing -----------------------------------------------------------
    def existing_shares(self, path: str) -> list[dict]:
        resp = self.http.get(
            f"{self.server_url}/ocs/v2.php/apps/files_sharing/api/v1/shares",
            params={"path": path, "reshares": "true"},
            headers=self.OCS_HEADERS,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()["ocs"]["data"]
        return data if isinstance(data, list) else [data]

    def ensure_permanent_share(self, path: str) -> str:
        """Return a non-expiring public link, reusing one when it exists."""

        try:
            for share in self.existing_shares(path):
                if (
                    int(share.get("share_type", -1)) == self.SHARE_TYPE_PUBLIC_LINK
                    and not share.get("expiration")
                    and share.get("url")
                ):
                    return share["url"]
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            logger.warning("Could not list shares for %s: %s", path, exc)
        return self.create_public_share(path)

    def create_public_share(self, path: str) -> str:
        """Try each share API in turn, falling back to the WebDAV URL."""

        for strategy in (self._share_ocs_v2, self._share_ocs_v1, self._share_legacy):
            try:
                url = strategy(path)
            except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
                logger.warning("%s failed for %s: %s", strategy.__name__, path, exc)
                continue
            if url:
                return url
        logger.warning("Falling back to direct WebDAV URL for %s", path)
        return self.direct_download_url(path)

    def _share_form(self, path: str) -> dict:
        return {
            "path": path,
            "shareType": str(self.SHARE_TYPE_PUBLIC_LINK),
            "permissions": "1",
            "publicUpload": "false",
            "password": "",
            "expireDate": "",
        }

    def _share_ocs(self, path: str, version: str) -> str | None:
        resp = self.http.post(
            f"{self.server_url}/ocs/{version}.php/apps/files_sharing/api/v1/shares",
            data=self._share_form(path),
            headers=self.OCS_HEADERS,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        if "json" in resp.headers.get("Content-Type", ""):
            return resp.json()["ocs"]["data"].get("url")
        node = ElementTree.fromstring(resp.text).find(".//url")
        return node.text if node is not None else None

    def _share_ocs_v2(self, path: str) -> str | None:
        return self._share_ocs(path, "v2")

    def _share_ocs_v1(self, path: str) -> str | None:
        return self._share_ocs(path, "v1")

    def _share_legacy(self, path: str) -> str | None:
        resp = self.http.post(
            f"{self.server_url}/index.php/apps/files_sharing/ajax/share.php",
            data={"action": "share", "path": path, "shareType": "3", "permissions": "1"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json().get("data") or {}
        if data.get("url"):
            return data["url"]
        if data.get("token"):
            return f"{self.server_url}/index.php/s/{data['token']}"
        return None


class S3Backend(StorageBackend):
    """Storage backend backed by MinIO or any S3 compatible service."""

    def __init__(self, client=None) -> None:
        self.endpoint = os.getenv("S3_ENDPOINT")
        self.public_endpoint = os.getenv("S3_PUBLIC_ENDPOINT") or self.endpoint
        self.bucket = os.getenv("S3_BUCKET_MAIN") or os.getenv("S3_BUCKET", "documents")
        self.client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            aws_access_key_id=os.getenv("S3_ACCESS_KEY") or os.getenv("S3_ACCESS_KEY_ID"),
            aws_secret_access_key=os.getenv("S3_SECRET_KEY")
            or os.getenv("S3_SECRET_ACCESS_KEY"),
            config=Config(signature_version="s3v4"),
        )

    @staticmethod
    def _key(path: str) -> str:
        return path.lstrip("/")

    def upload(self, local_path: str, target_folder: str, desired_name: str) -> UploadResult:
        path = join_path(target_folder, desired_name)
        mime_type = guess_mime_type(desired_name)
        self.client.upload_file(
            local_path,
            self.bucket,
            self._key(path),
            ExtraArgs={"ContentType": mime_type},
        )
        base = (self.public_endpoint or "").rstrip("/")
        return UploadResult(
            path=path,
            download_url=f"{base}/{self.bucket}/{quote(self._key(path))}",
            size=os.path.getsize(local_path),
            mime_type=mime_type,
        )

    def delete(self, path: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=self._key(path))


class FSBackend(StorageBackend):
    """Filesystem storage served via an Nginx alias."""

    def __init__(self, base_path: str | None = None, public_url: str | None = None) -> None:
        self.base_path = Path(base_path or _env("storage.fs_path", "/tmp/files")).resolve()
        self.public_url = (public_url or _env("storage.fs_public_url", "/fs")).rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _full_path(self, path: str) -> Path:
        return self.base_path / path.lstrip("/")

    def upload(self, local_path: str, target_folder: str, desired_name: str) -> UploadResult:
        path = join_path(target_folder, desired_name)
        dest = self._full_path(path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, dest)
        return UploadResult(
            path=path,
            download_url=f"{self.public_url}/{quote(path.lstrip('/'))}",
            size=dest.stat().st_size,
            mime_type=guess_mime_type(desired_name),
        )

    def delete(self, path: str) -> None:
        full = self._full_path(path)
        if not full.exists():
            raise FileNotFoundError(path)
        full.unlink()


# -- backend loader --------------------------------------------------------
def load_backend() -> StorageBackend:
    backend_type = (_env("storage.type", "webdav") or "webdav").lower()
    if backend_type == "fs":
        return FSBackend()
    if backend_type in {"s3", "minio"}:
        return S3Backend()
    return WebDAVBackend()


__all__ = [
    "StorageBackend",
    "UploadResult",
    "WebDAVBackend",
    "S3Backend",
    "FSBackend",
    "load_backend",
]
