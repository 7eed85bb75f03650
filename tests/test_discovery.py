"""Tests for discovery reply collection.

A local UDP endpoint stands in for the bulbs: it answers the probe with
canned header blocks. The multicast socket is swapped for a plain
loopback socket so the tests never touch the real network.
"""

import asyncio
import socket
from unittest.mock import patch

import pytest

from yeelight_bridge import discovery
from yeelight_bridge.discovery import DeviceRecord, _DiscoveryProtocol, discover_devices
from yeelight_bridge.exceptions import DiscoverySocketError
from yeelight_bridge.reconcile import Action, reconcile, stable_key

REPLY_COLOR = (
    b"HTTP/1.1 200 OK\r\n"
    b"Location: proto://10.0.0.5:55443\r\n"
    b"id: 0x1\r\n"
    b"model: color\r\n"
    b"power: on\r\n"
)
REPLY_NO_ID = (
    b"HTTP/1.1 200 OK\r\n"
    b"Location: proto://10.0.0.6:55443\r\n"
    b"model: mono\r\n"
)


class _FakeBulbs(asyncio.DatagramProtocol):
    """Answers each probe with every reply in ``replies``."""

    def __init__(self, replies, delay: float = 0.0):
        self.replies = replies
        self.delay = delay
        self.probes = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.probes.append(data)
        asyncio.get_running_loop().create_task(self._answer(addr))

    async def _answer(self, addr):
        if self.delay:
            await asyncio.sleep(self.delay)
        for reply in self.replies:
            self.transport.sendto(reply, addr)


def _loopback_socket(group, local_port, bind_ip):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.setblocking(False)
    return sock


async def _start_fake_bulbs(replies, delay: float = 0.0):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: _FakeBulbs(replies, delay), local_addr=("127.0.0.1", 0),
    )
    port = transport.get_extra_info("sockname")[1]
    return transport, protocol, port


@pytest.mark.asyncio
async def test_no_replies_returns_empty():
    transport, fake, port = await _start_fake_bulbs([])
    try:
        with patch.object(discovery, "_create_multicast_socket", _loopback_socket):
            devices = await discover_devices(timeout=0.2, group="127.0.0.1", port=port)
    finally:
        transport.close()
    assert devices == []
    assert len(fake.probes) == 1


@pytest.mark.asyncio
async def test_probe_is_m_search():
    transport, fake, port = await _start_fake_bulbs([])
    try:
        with patch.object(discovery, "_create_multicast_socket", _loopback_socket):
            await discover_devices(timeout=0.1, group="127.0.0.1", port=port)
    finally:
        transport.close()
    assert fake.probes[0].startswith(b"M-SEARCH * HTTP/1.1\r\n")
    assert b"ST: wifi_bulb\r\n" in fake.probes[0]


@pytest.mark.asyncio
async def test_duplicates_kept_in_arrival_order():
    replies = [REPLY_COLOR, REPLY_NO_ID, REPLY_COLOR]
    transport, fake, port = await _start_fake_bulbs(replies)
    try:
        with patch.object(discovery, "_create_multicast_socket", _loopback_socket):
            devices = await discover_devices(timeout=0.3, group="127.0.0.1", port=port)
    finally:
        transport.close()
    assert len(devices) == 3
    assert [d.model for d in devices] == ["color", "mono", "color"]
    assert devices[0].sender[0] == "127.0.0.1"


@pytest.mark.asyncio
async def test_reply_after_window_is_dropped():
    transport, fake, port = await _start_fake_bulbs([REPLY_COLOR], delay=0.5)
    try:
        with patch.object(discovery, "_create_multicast_socket", _loopback_socket):
            devices = await discover_devices(timeout=0.15, group="127.0.0.1", port=port)
    finally:
        await asyncio.sleep(0.5)
        transport.close()
    assert devices == []


@pytest.mark.asyncio
async def test_end_to_end_one_create_for_reply_with_id():
    transport, fake, port = await _start_fake_bulbs([REPLY_COLOR, REPLY_NO_ID])
    try:
        with patch.object(discovery, "_create_multicast_socket", _loopback_socket):
            devices = await discover_devices(timeout=0.3, group="127.0.0.1", port=port)
    finally:
        transport.close()

    actions = reconcile(devices, [])
    assert len(actions) == 1
    assert actions[0].action is Action.CREATE
    assert actions[0].record.id == "0x1"
    assert actions[0].key == stable_key("0x1")


@pytest.mark.asyncio
async def test_bind_failure_raises():
    def failing_socket(group, local_port, bind_ip):
        raise DiscoverySocketError("Cannot bind discovery socket")

    with patch.object(discovery, "_create_multicast_socket", failing_socket):
        with pytest.raises(DiscoverySocketError) as excinfo:
            await discover_devices(timeout=0.1)
    assert excinfo.value.devices == []


def test_bind_conflict_reported_as_discovery_error():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    port = blocker.getsockname()[1]
    try:
        with pytest.raises(DiscoverySocketError):
            discovery._create_multicast_socket(local_port=port, bind_ip="127.0.0.1")
    finally:
        blocker.close()


class TestDiscoveryProtocol:
    def _make_protocol(self):
        return _DiscoveryProtocol()

    def test_datagram_becomes_record(self):
        protocol = self._make_protocol()
        protocol.datagram_received(REPLY_COLOR, ("10.0.0.5", 1982))
        assert len(protocol.devices) == 1
        record = protocol.devices[0]
        assert record.id == "0x1"
        assert record.location == "proto://10.0.0.5:55443"
        assert record.sender == ("10.0.0.5", 1982)

    def test_garbage_datagram_still_recorded(self):
        protocol = self._make_protocol()
        protocol.datagram_received(b"\x00\x01garbage", ("10.0.0.9", 1982))
        assert len(protocol.devices) == 1
        assert protocol.devices[0].id is None

    def test_error_keeps_partial_results(self):
        protocol = self._make_protocol()
        protocol.datagram_received(REPLY_COLOR, ("10.0.0.5", 1982))
        protocol.error_received(OSError("network unreachable"))
        protocol.datagram_received(REPLY_COLOR, ("10.0.0.5", 1982))
        assert protocol.failed.is_set()
        assert isinstance(protocol.error, OSError)
        assert len(protocol.devices) == 1

    @pytest.mark.asyncio
    async def test_send_error_raises_with_partial_devices(self):
        transport, fake, port = await _start_fake_bulbs([REPLY_COLOR])
        original = _DiscoveryProtocol.datagram_received

        def fail_after_first(self, data, addr):
            original(self, data, addr)
            self.error_received(OSError("boom"))

        try:
            with patch.object(discovery, "_create_multicast_socket", _loopback_socket), \
                    patch.object(_DiscoveryProtocol, "datagram_received", fail_after_first):
                with pytest.raises(DiscoverySocketError) as excinfo:
                    await discover_devices(timeout=1.0, group="127.0.0.1", port=port)
        finally:
            transport.close()
        assert [d.id for d in excinfo.value.devices] == ["0x1"]


class TestDeviceRecord:
    def test_derived_fields(self):
        record = DeviceRecord.from_datagram(
            b"id: 0x2\r\nmodel: stripe\r\nname: Shelf\r\nfw_ver: 45\r\n"
            b"support: get_prop set_power toggle\r\npower: off\r\n"
            b"Location: yeelight://10.0.0.7:55443\r\n"
        )
        assert record.id == "0x2"
        assert record.model == "stripe"
        assert record.name == "Shelf"
        assert record.fw_ver == "45"
        assert record.power == "off"
        assert record.support == ("get_prop", "set_power", "toggle")
        assert record.address == ("10.0.0.7", 55443)

    def test_blank_id_is_unusable(self):
        assert DeviceRecord.from_datagram(b"id:   \r\n").id is None

    def test_missing_location(self):
        record = DeviceRecord.from_datagram(b"id: 0x3\r\n")
        assert record.location is None
        assert record.address is None

    def test_immutable(self):
        record = DeviceRecord.from_datagram(b"id: 0x3\r\n")
        with pytest.raises(AttributeError):
            record.sender = ("1.2.3.4", 1)

    def test_fields_are_read_only(self):
        source = {"id": "0x3"}
        record = DeviceRecord(fields=source)
        with pytest.raises(TypeError):
            record.fields["id"] = "0x4"
        source["id"] = "0x4"
        assert record.id == "0x3"
