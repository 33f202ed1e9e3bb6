"""Tests for UploadOrchestrator with a mocked API."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from attachbox.api.client import AttachBoxAPI
from attachbox.errors import PatchFailed, PreconditionFailed, QuotaExceeded, TransportError
from attachbox.fingerprint import md5_bytes
from attachbox.models import ItemRef, Precondition, RegistrationReceipt, UploadTicket
from attachbox.upload.engine import UploadOrchestrator

ITEM = ItemRef("users", 1, "ABCD2345")
DATA = b"attachment bytes"


def _ticket(key: str = "u1") -> UploadTicket:
    return UploadTicket(url="https://store.test/up", upload_key=key, params={"key": md5_bytes(DATA)})


@pytest.fixture
def api():
    return MagicMock(spec=AttachBoxAPI)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(api, sleeps):
    return UploadOrchestrator(api, max_attempts=3, retry_delay=10.0, sleep=sleeps.append)


def test_exists_skips_transfer(api, orchestrator) -> None:
    api.authorize_upload.return_value = RegistrationReceipt(version=4, exists=True)
    receipt = orchestrator.upload_bytes(ITEM, DATA, "a.txt")
    assert receipt.exists is True
    api.upload_to_store.assert_not_called()
    api.register_upload.assert_not_called()


def test_ticket_is_transferred_and_registered(api, orchestrator) -> None:
    api.authorize_upload.return_value = _ticket()
    api.register_upload.return_value = RegistrationReceipt(version=5)

    receipt = orchestrator.upload_bytes(ITEM, DATA, "a.txt")

    assert receipt.version == 5
    descriptor = api.authorize_upload.call_args[0][1]
    assert descriptor.hash == md5_bytes(DATA)
    assert api.authorize_upload.call_args[0][2] == Precondition.must_not_exist()
    api.upload_to_store.assert_called_once_with(_ticket(), DATA, md5_bytes(DATA))
    api.register_upload.assert_called_once_with(ITEM, "u1", Precondition.must_not_exist())


def test_transport_failure_redoes_whole_sequence(api, orchestrator, sleeps) -> None:
    api.authorize_upload.side_effect = [_ticket("u1"), _ticket("u2")]
    api.upload_to_store.side_effect = [TransportError("Timeout"), None]
    api.register_upload.return_value = RegistrationReceipt(version=6)

    receipt = orchestrator.upload_bytes(ITEM, DATA, "a.txt")

    assert receipt.version == 6
    assert api.authorize_upload.call_count == 2
    api.register_upload.assert_called_once_with(ITEM, "u2", Precondition.must_not_exist())
    assert sleeps == [10.0]


def test_transport_failure_gives_up_after_max_attempts(api, orchestrator, sleeps) -> None:
    api.authorize_upload.return_value = _ticket()
    api.upload_to_store.side_effect = TransportError("Timeout")
    with pytest.raises(TransportError):
        orchestrator.upload_bytes(ITEM, DATA, "a.txt")
    assert api.authorize_upload.call_count == 3
    assert sleeps == [10.0, 20.0]


@pytest.mark.parametrize(
    "error",
    [QuotaExceeded("quota", 300, 1), PreconditionFailed("changed", 412)],
)
def test_semantic_failures_are_not_retried(api, orchestrator, error) -> None:
    api.authorize_upload.side_effect = error
    with pytest.raises(type(error)):
        orchestrator.upload_bytes(ITEM, DATA, "a.txt")
    assert api.authorize_upload.call_count == 1


def test_descriptor_size_must_match_data(orchestrator) -> None:
    from attachbox.fingerprint import describe_bytes

    with pytest.raises(ValueError):
        orchestrator.upload(ITEM, describe_bytes(DATA, "a.txt"), DATA + b"!")


def test_patch_sent_with_if_match(api, orchestrator) -> None:
    old, new = b"version one " * 10, b"version two " * 10
    api.authorize_upload.return_value = _ticket()
    api.upload_patch.return_value = RegistrationReceipt(version=8, patched=True)

    receipt = orchestrator.upload_patch(ITEM, old, new, "a.txt")

    assert receipt.patched is True
    assert api.authorize_upload.call_args[0][2] == Precondition.must_match(md5_bytes(old))
    args = api.upload_patch.call_args[0]
    assert args[0] == ITEM
    assert args[1] == "u1"
    assert args[2] == "bsdiff"
    assert args[4] == md5_bytes(old)
    api.upload_to_store.assert_not_called()


def test_patch_failure_falls_back_to_full_upload(api, orchestrator) -> None:
    old, new = b"version one " * 10, b"version two " * 10
    api.authorize_upload.return_value = _ticket()
    api.upload_patch.side_effect = PatchFailed("Patch could not be applied", 400)
    api.register_upload.return_value = RegistrationReceipt(version=9)

    receipt = orchestrator.upload_patch(ITEM, old, new, "a.txt")

    assert receipt.version == 9
    assert receipt.patched is False
    api.upload_to_store.assert_called_once_with(_ticket(), new, md5_bytes(new))
    api.register_upload.assert_called_once_with(ITEM, "u1", Precondition.must_match(md5_bytes(old)))


def test_lock_is_per_item_and_hash(orchestrator) -> None:
    other = ItemRef("users", 1, "ZZZZ2345")
    with orchestrator._holding(ITEM, "h1"):
        assert orchestrator._locks[(ITEM.path, "h1")][0].locked()
        # Different hash or item: not blocked by the held lock
        with orchestrator._holding(ITEM, "h2"), orchestrator._holding(other, "h1"):
            assert len(orchestrator._locks) == 3
    assert orchestrator._locks == {}


def test_waiting_thread_keeps_lock_entry(orchestrator) -> None:
    entered = threading.Event()

    def wait_for_lock() -> None:
        with orchestrator._holding(ITEM, "h1"):
            entered.set()

    waiter = threading.Thread(target=wait_for_lock)
    with orchestrator._holding(ITEM, "h1"):
        waiter.start()
        deadline = time.monotonic() + 5
        while orchestrator._locks[(ITEM.path, "h1")][1] < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert orchestrator._locks[(ITEM.path, "h1")][1] == 2
        assert not entered.is_set()
    waiter.join(timeout=5)
    assert entered.is_set()
    assert orchestrator._locks == {}


def test_locks_are_released_after_upload(api, orchestrator) -> None:
    api.authorize_upload.return_value = _ticket()
    api.register_upload.return_value = RegistrationReceipt(version=5)
    orchestrator.upload_bytes(ITEM, DATA, "a.txt")
    assert orchestrator._locks == {}


def test_download_resolves_then_fetches(api, orchestrator) -> None:
    target = MagicMock()
    api.get_file_location.return_value = target
    api.download.return_value = DATA
    assert orchestrator.download(ITEM, mode="view") == DATA
    api.get_file_location.assert_called_once_with(ITEM, "view")
    api.download.assert_called_once_with(target)


def test_upload_file_describes_file_from_disk(api, orchestrator, tmp_path) -> None:
    path = tmp_path / "notes.txt"
    path.write_bytes(DATA)
    api.authorize_upload.return_value = RegistrationReceipt(version=3, exists=True)

    orchestrator.upload_file(ITEM, path)

    descriptor = api.authorize_upload.call_args[0][1]
    assert descriptor.filename == "notes.txt"
    assert descriptor.hash == md5_bytes(DATA)
    assert descriptor.size == len(DATA)
    assert descriptor.content_type == "text/plain"
