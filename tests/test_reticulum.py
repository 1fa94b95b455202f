import io

import pytest
import RNS

from roomlink.reticulum import accept_frame_resources, split_dest_name
from roomlink.session import link_connection_id


class FakeLink:
    def __init__(self) -> None:
        self.link_id = b"\x0a" * 16
        self.strategy = None
        self.advertised = None
        self.concluded = None

    def set_resource_strategy(self, strategy) -> None:
        self.strategy = strategy

    def set_resource_callback(self, cb) -> None:
        self.advertised = cb

    def set_resource_concluded_callback(self, cb) -> None:
        self.concluded = cb


class FakeResource:
    def __init__(self, link, data: bytes, status=RNS.Resource.COMPLETE) -> None:
        self.link = link
        self.data = io.BytesIO(data)
        self.total_size = len(data)
        self.status = status


def test_split_dest_name() -> None:
    assert split_dest_name("roomlink.relay") == ("roomlink", ["relay"])
    with pytest.raises(ValueError):
        split_dest_name("..")


def test_connection_id_is_link_id_hex() -> None:
    assert link_connection_id(FakeLink()) == "0a" * 16


def test_large_frames_accepted_as_resources() -> None:
    link = FakeLink()
    frames: list[bytes] = []
    accept_frame_resources(link, frames.append, max_bytes=1024)

    assert link.strategy == RNS.Link.ACCEPT_APP
    ok = FakeResource(link, b"x" * 600)
    assert link.advertised(ok) is True
    link.concluded(ok)
    assert frames == [b"x" * 600]


def test_oversized_and_failed_resources_are_dropped() -> None:
    link = FakeLink()
    frames: list[bytes] = []
    accept_frame_resources(link, frames.append, max_bytes=100)

    assert link.advertised(FakeResource(link, b"x" * 101)) is False
    link.concluded(FakeResource(link, b"partial", status=RNS.Resource.FAILED))
    assert frames == []
