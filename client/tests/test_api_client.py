"""Tests for AttachBoxAPI with mocked HTTP."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from attachbox.api.client import AttachBoxAPI, content_md5, transfer_timeout
from attachbox.errors import NotFound, PreconditionFailed, QuotaExceeded, TransportError
from attachbox.models import FileDescriptor, ItemRef, Precondition, RegistrationReceipt, UploadTicket

MD5 = "9e107d9d372bb6826bd81d3542a419d6"
ITEM = ItemRef("users", 1, "ABCD2345")
DESCRIPTOR = FileDescriptor(hash=MD5, size=43, filename="fox.txt", mtime=1700000000000, content_type="text/plain")


@pytest.fixture
def mock_httpx_client():
    """Patch httpx.Client so requests return controlled responses."""
    with patch("attachbox.api.client.httpx.Client") as MockClient:
        yield MockClient


def _wire(mock_httpx_client, method: str, response) -> MagicMock:
    mock_client_instance = MagicMock()
    getattr(mock_client_instance, method).return_value = response
    mock_httpx_client.return_value.__enter__.return_value = mock_client_instance
    mock_httpx_client.return_value.__exit__.return_value = False
    return mock_client_instance


def _response(status_code: int, json_data=None, headers=None) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = json_data
    mock_response.headers = headers or {}
    return mock_response


def test_authorize_upload_returns_ticket(mock_httpx_client) -> None:
    """authorize_upload() POSTs descriptor fields with the precondition header."""
    ticket_json = {
        "url": "https://store.test/storage/upload",
        "contentType": "multipart/form-data; boundary=xyz",
        "prefix": "--xyz\r\n",
        "suffix": "\r\n--xyz--",
        "uploadKey": "k" * 32,
    }
    client = _wire(mock_httpx_client, "post", _response(200, ticket_json))

    api = AttachBoxAPI(base_url="https://api.test.com", api_token="token")
    result = api.authorize_upload(ITEM, DESCRIPTOR, Precondition.must_not_exist())

    assert isinstance(result, UploadTicket)
    assert result.upload_key == "k" * 32
    assert not result.is_params_mode
    call_args = client.post.call_args
    assert call_args[0][0] == "https://api.test.com/users/1/items/ABCD2345/file"
    data = call_args[1]["data"]
    assert data["md5"] == MD5
    assert data["filesize"] == "43"
    assert data["mtime"] == "1700000000000"
    assert "params" not in data
    assert call_args[1]["headers"]["If-None-Match"] == "*"
    assert call_args[1]["headers"]["Authorization"] == "Bearer token"


def test_authorize_upload_params_mode(mock_httpx_client) -> None:
    ticket_json = {"url": "https://store.test/upload", "params": {"key": MD5}, "uploadKey": "u1"}
    client = _wire(mock_httpx_client, "post", _response(200, ticket_json))

    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    result = api.authorize_upload(ITEM, DESCRIPTOR, Precondition.must_match(MD5), params_mode=True)

    assert result.is_params_mode
    assert result.params == {"key": MD5}
    assert client.post.call_args[1]["data"]["params"] == "1"
    assert client.post.call_args[1]["headers"]["If-Match"] == MD5


def test_authorize_upload_exists(mock_httpx_client) -> None:
    _wire(mock_httpx_client, "post", _response(200, {"exists": 1}, {"Last-Modified-Version": "12"}))
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    result = api.authorize_upload(ITEM, DESCRIPTOR, Precondition.must_not_exist())
    assert result == RegistrationReceipt(version=12, exists=True)


def test_authorize_upload_quota_exceeded(mock_httpx_client) -> None:
    response = httpx.Response(
        413,
        json={"detail": "File would exceed quota (300 MB)"},
        headers={"X-Storage-Quota": "300", "X-Storage-UserID": "5"},
    )
    _wire(mock_httpx_client, "post", response)
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    with pytest.raises(QuotaExceeded) as exc_info:
        api.authorize_upload(ITEM, DESCRIPTOR, Precondition.must_not_exist())
    assert exc_info.value.quota_mb == 300
    assert exc_info.value.user_id == 5


def test_upload_to_store_sends_prefix_body_and_digest(mock_httpx_client) -> None:
    client = _wire(mock_httpx_client, "post", _response(201))
    ticket = UploadTicket(
        url="https://store.test/storage/upload",
        upload_key="u1",
        content_type="multipart/form-data; boundary=xyz",
        prefix="PREFIX|",
        suffix="|SUFFIX",
    )
    data = b"The quick brown fox jumps over the lazy dog"

    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    api.upload_to_store(ticket, data, MD5)

    call_args = client.post.call_args
    assert call_args[0][0] == "https://store.test/storage/upload"
    assert call_args[1]["content"] == b"PREFIX|" + data + b"|SUFFIX"
    assert call_args[1]["headers"]["Content-Type"] == "multipart/form-data; boundary=xyz"
    assert call_args[1]["headers"]["Content-MD5"] == "nhB9nTcrtoJr2B01QqQZ1g=="
    assert "Authorization" not in call_args[1]["headers"]
    assert mock_httpx_client.call_args[1]["timeout"] == transfer_timeout(len(data))


def test_upload_to_store_timeout_is_transport_error(mock_httpx_client) -> None:
    client = _wire(mock_httpx_client, "post", None)
    client.post.side_effect = httpx.ReadTimeout("timed out")
    ticket = UploadTicket(url="https://store.test/up", upload_key="u1", params={"key": MD5})
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    with pytest.raises(TransportError):
        api.upload_to_store(ticket, b"data", MD5)


def test_register_upload_returns_version(mock_httpx_client) -> None:
    client = _wire(mock_httpx_client, "post", _response(204, headers={"Last-Modified-Version": "7"}))
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    receipt = api.register_upload(ITEM, "u1", Precondition.must_match(MD5))
    assert receipt.version == 7
    assert client.post.call_args[1]["data"] == {"upload": "u1"}
    assert client.post.call_args[1]["headers"]["If-Match"] == MD5


def test_register_upload_precondition_failed(mock_httpx_client) -> None:
    _wire(mock_httpx_client, "post", httpx.Response(412, json={"detail": "ETag does not match"}))
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    with pytest.raises(PreconditionFailed):
        api.register_upload(ITEM, "u1", Precondition.must_match(MD5))


def test_upload_patch(mock_httpx_client) -> None:
    client = _wire(mock_httpx_client, "patch", _response(204, headers={"Last-Modified-Version": "9"}))
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    receipt = api.upload_patch(ITEM, "u1", "bsdiff", b"BSDIFF40...", MD5)
    assert receipt.version == 9
    assert receipt.patched is True
    kwargs = client.patch.call_args[1]
    assert kwargs["params"] == {"algorithm": "bsdiff", "upload": "u1"}
    assert kwargs["content"] == b"BSDIFF40..."
    assert kwargs["headers"]["If-Match"] == MD5


def test_get_file_location_follows_nothing(mock_httpx_client) -> None:
    client = _wire(mock_httpx_client, "get", _response(302, headers={"Location": "https://store.test/o/x"}))
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    target = api.get_file_location(ITEM, mode="view")
    assert target.url == "https://store.test/o/x"
    assert target.mode == "view"
    assert client.get.call_args[0][0].endswith("/items/ABCD2345/file/view")
    assert client.get.call_args[1]["follow_redirects"] is False


def test_get_file_location_not_found(mock_httpx_client) -> None:
    _wire(mock_httpx_client, "get", httpx.Response(404, json={"detail": "File not found"}))
    api = AttachBoxAPI(base_url="https://api.test.com", api_token="t")
    with pytest.raises(NotFound):
        api.get_file_location(ITEM)


def test_transfer_timeout_scales_and_caps() -> None:
    assert transfer_timeout(0) == 600.0
    assert transfer_timeout(1024 * 1024) == 660.0
    assert transfer_timeout(1024 * 1024 * 1024) == 1800.0


def test_content_md5() -> None:
    assert content_md5(MD5) == "nhB9nTcrtoJr2B01QqQZ1g=="


def test_set_base_url_strips_trailing_slash() -> None:
    api = AttachBoxAPI(base_url="https://api.test.com/", api_token="t")
    assert api._base_url == "https://api.test.com"
    api.set_base_url("https://other.test/")
    assert api._base_url == "https://other.test"
