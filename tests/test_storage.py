from unittest.mock import MagicMock

import pytest
import requests

from docflow import storage
from docflow.storage import FSBackend, S3Backend, WebDAVBackend


def _response(status=200, json_data=None, text="", content_type="application/json"):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = {"Content-Type": content_type}
    resp.text = text
    resp.json.return_value = json_data
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(str(status))
    return resp


@pytest.fixture()
def webdav():
    http = MagicMock()
    backend = WebDAVBackend(
        base_url="https://cloud.example.com/remote.php/dav/files/bot",
        username="bot",
        password="secret",
        session=http,
        timeout=5,
    )
    return backend, http


def test_fs_backend_roundtrip(tmp_path):
    backend = FSBackend(base_path=str(tmp_path), public_url="/fs/")
    local = tmp_path / "in.pdf"
    local.write_bytes(b"abc")

    result = backend.upload(str(local), "/Documents/Thanh toán", "in_1.pdf")
    assert result.path == "/Documents/Thanh toán/in_1.pdf"
    assert result.download_url == "/fs/Documents/Thanh%20to%C3%A1n/in_1.pdf"
    assert result.size == 3
    assert result.mime_type == "application/pdf"

    backend.delete(result.path)
    assert not (tmp_path / "Documents" / "Thanh toán" / "in_1.pdf").exists()
    with pytest.raises(FileNotFoundError):
        backend.delete(result.path)


def test_webdav_upload_reuses_permanent_share(webdav, tmp_path):
    backend, http = webdav
    local = tmp_path / "a.pdf"
    local.write_bytes(b"12345")
    http.request.return_value = _response(405)
    http.put.return_value = _response(201)
    http.get.return_value = _response(
        json_data={
            "ocs": {
                "data": [
                    {"share_type": 3, "expiration": "2030-01-01", "url": "https://old"},
                    {"share_type": 3, "expiration": None, "url": "https://cloud/s/perm"},
                ]
            }
        }
    )

    result = backend.upload(str(local), "/Documents", "a.pdf")
    assert result.path == "/Documents/a.pdf"
    assert result.download_url == "https://cloud/s/perm"
    assert result.size == 5
    http.request.assert_called_once_with(
        "MKCOL", "https://cloud.example.com/remote.php/dav/files/bot/Documents", timeout=5
    )
    http.post.assert_not_called()


def test_webdav_share_falls_back_through_strategies(webdav):
    backend, http = webdav
    http.get.side_effect = requests.ConnectionError("down")
    http.post.side_effect = [
        _response(500),
        _response(
            text="<ocs><data><url>https://cloud/s/v1</url></data></ocs>",
            content_type="text/xml",
        ),
    ]
    assert backend.ensure_permanent_share("/Documents/a.pdf") == "https://cloud/s/v1"
    urls = [c.args[0] for c in http.post.call_args_list]
    assert urls == [
        "https://cloud.example.com/ocs/v2.php/apps/files_sharing/api/v1/shares",
        "https://cloud.example.com/ocs/v1.php/apps/files_sharing/api/v1/shares",
    ]


def test_webdav_legacy_token_share(webdav):
    backend, http = webdav
    http.post.side_effect = [
        requests.ConnectionError("v2"),
        requests.ConnectionError("v1"),
        _response(json_data={"data": {"token": "abc"}}),
    ]
    assert backend.create_public_share("/a.pdf") == "https://cloud.example.com/index.php/s/abc"


def test_webdav_always_returns_some_url(webdav):
    backend, http = webdav
    http.post.side_effect = requests.ConnectionError("down")
    url = backend.create_public_share("/Documents/a b.pdf")
    assert url == (
        "https://cloud.example.com/remote.php/dav/files/bot/%2FDocuments%2Fa%20b.pdf"
    )


def test_webdav_upload_errors_propagate(webdav, tmp_path):
    backend, http = webdav
    local = tmp_path / "a.pdf"
    local.write_bytes(b"1")
    http.request.return_value = _response(201)
    http.put.return_value = _response(507)
    with pytest.raises(requests.HTTPError):
        backend.upload(str(local), "/Documents", "a.pdf")


def test_s3_backend_uses_client(tmp_path, monkeypatch):
    monkeypatch.setenv("S3_PUBLIC_ENDPOINT", "https://files.example.com/")
    monkeypatch.setenv("S3_BUCKET_MAIN", "docs")
    client = MagicMock()
    backend = S3Backend(client=client)
    local = tmp_path / "a.pdf"
    local.write_bytes(b"12")

    result = backend.upload(str(local), "/Documents", "a.pdf")
    client.upload_file.assert_called_once_with(
        str(local), "docs", "Documents/a.pdf", ExtraArgs={"ContentType": "application/pdf"}
    )
    assert result.download_url == "https://files.example.com/docs/Documents/a.pdf"
    backend.delete(result.path)
    client.delete_object.assert_called_once_with(Bucket="docs", Key="Documents/a.pdf")


@pytest.mark.parametrize(
    "backend_type, expected",
    [("fs", FSBackend), ("webdav", WebDAVBackend)],
)
def test_load_backend(monkeypatch, tmp_path, backend_type, expected):
    monkeypatch.setenv("STORAGE__TYPE", backend_type)
    monkeypatch.setenv("STORAGE__FS_PATH", str(tmp_path))
    assert isinstance(storage.load_backend(), expected)


def test_storage_timeout_env(monkeypatch):
    monkeypatch.setenv("STORAGE__TIMEOUT", "12")
    assert storage.WebDAVBackend(base_url="http://x", session=MagicMock()).timeout == 12.0
