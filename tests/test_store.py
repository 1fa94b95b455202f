import os

from roomlink.models import Message, User
from roomlink.store import LocalStore


def _msg(i: int, room: str = "ABCD") -> Message:
    return Message(
        id=f"m{i}",
        text=f"text {i}",
        sender="alice",
        sender_id="c1",
        timestamp="2024-01-01T00:00:00.000Z",
        room_code=room,
    )


def test_message_log_never_exceeds_cap_and_evicts_oldest() -> None:
    store = LocalStore(max_messages=1000)
    for i in range(1500):
        store.add_message(_msg(i))
        assert len(store.get_messages()) <= 1000

    ids = [m.id for m in store.get_messages()]
    assert len(ids) == 1000
    assert ids[0] == "m500"
    assert ids[-1] == "m1499"


def test_add_message_deduplicates_by_id() -> None:
    store = LocalStore()
    assert store.add_message(_msg(1)) is True
    assert store.add_message(_msg(1)) is False
    assert len(store.get_messages()) == 1


def test_evicted_id_can_be_stored_again() -> None:
    store = LocalStore(max_messages=2)
    for i in range(3):
        store.add_message(_msg(i))
    assert [m.id for m in store.get_messages()] == ["m1", "m2"]
    assert store.add_message(_msg(0)) is True


def test_get_messages_filters_by_room() -> None:
    store = LocalStore()
    store.add_message(_msg(1, "ABCD"))
    store.add_message(_msg(2, "WXYZ"))
    assert [m.id for m in store.get_messages("WXYZ")] == ["m2"]


def test_user_and_key_round_trip_in_memory() -> None:
    store = LocalStore()
    assert store.get_user() is None
    store.save_user(User("alice", "ABCD"))
    store.save_encryption_key(b"\x01" * 32)
    assert store.get_user() == User("alice", "ABCD")
    assert store.get_encryption_key() == b"\x01" * 32
    assert store.usage() == 0

    store.clear_all()
    assert store.get_user() is None
    assert store.get_encryption_key() is None
    assert store.get_messages() == []


def test_persists_across_instances(tmp_path) -> None:
    path = str(tmp_path / "store.toml")
    store = LocalStore(path)
    store.save_user(User("alice", "ABCD"))
    store.save_encryption_key(b"\xab" * 32)
    store.add_message(_msg(1))
    store.add_message(_msg(2))

    assert os.path.exists(path)
    assert store.usage() > 0

    reopened = LocalStore(path)
    assert reopened.get_user() == User("alice", "ABCD")
    assert reopened.get_encryption_key() == b"\xab" * 32
    assert [m.id for m in reopened.get_messages()] == ["m1", "m2"]
    assert reopened.add_message(_msg(1)) is False


def test_store_file_is_private(tmp_path) -> None:
    path = tmp_path / "store.toml"
    LocalStore(str(path)).save_user(User("alice", "ABCD"))
    assert (path.stat().st_mode & 0o077) == 0


def test_corrupt_file_is_treated_as_empty(tmp_path) -> None:
    path = tmp_path / "store.toml"
    path.write_text("this is = = not toml", encoding="utf-8")

    store = LocalStore(str(path))
    assert store.get_user() is None
    assert store.get_messages() == []

    store.add_message(_msg(1))
    assert [m.id for m in LocalStore(str(path)).get_messages()] == ["m1"]


def test_clear_user_keeps_messages(tmp_path) -> None:
    path = str(tmp_path / "store.toml")
    store = LocalStore(path)
    store.save_user(User("alice", "ABCD"))
    store.add_message(_msg(1))
    store.clear_user()

    reopened = LocalStore(path)
    assert reopened.get_user() is None
    assert len(reopened.get_messages()) == 1
