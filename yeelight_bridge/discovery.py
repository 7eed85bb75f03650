"""Yeelight bulb discovery via UDP multicast.

Sends one M-SEARCH probe to the Yeelight multicast group and collects
every reply that arrives within a fixed window. Each reply is an
HTTP-style header block carrying the bulb's id, model and control
location.

The window is counted from the moment the socket is bound, not from
when the probe goes out: a reply is accepted as long as the socket is
listening. Duplicate replies are kept; reconciliation deduplicates by id.
"""

import asyncio
import logging
import socket
import struct
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

from .exceptions import DiscoverySocketError
from .protocol import (
    MULTICAST_GROUP,
    MULTICAST_PORT,
    build_search_request,
    parse_location,
    parse_response,
)

logger = logging.getLogger(__name__)

DISCOVERY_LOCAL_PORT = 62142
DISCOVERY_TIMEOUT = 1.0
# Generous hop limit, still confined to typical LAN topologies.
MULTICAST_TTL = 128


@dataclass(frozen=True)
class DeviceRecord:
    """One parsed discovery reply. Immutable once built."""

    fields: Mapping[str, str] = field(default_factory=dict, hash=False)
    sender: Optional[Tuple[str, int]] = None

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @classmethod
    def from_datagram(cls, data: bytes, addr: Optional[tuple] = None) -> "DeviceRecord":
        sender = (addr[0], addr[1]) if addr else None
        return cls(fields=parse_response(data), sender=sender)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.fields.get(key, default)

    @property
    def id(self) -> Optional[str]:
        """Stable device id, or None when the reply carries no usable id."""
        value = self.fields.get("id", "").strip()
        return value or None

    @property
    def model(self) -> str:
        return self.fields.get("model", "")

    @property
    def location(self) -> Optional[str]:
        return self.fields.get("location") or None

    @property
    def name(self) -> str:
        return self.fields.get("name", "")

    @property
    def fw_ver(self) -> str:
        return self.fields.get("fw_ver", "")

    @property
    def power(self) -> str:
        return self.fields.get("power", "")

    @property
    def support(self) -> Tuple[str, ...]:
        return tuple(self.fields.get("support", "").split())

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """(host, port) from the location header, None if unusable."""
        return parse_location(self.location)


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """Collects discovery replies in arrival order."""

    def __init__(self):
        self.devices: List[DeviceRecord] = []
        self.error: Optional[Exception] = None
        self.failed = asyncio.Event()
        self.transport = None

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        if self.failed.is_set():
            return
        logger.info("Received %d bytes from %s:%d", len(data), addr[0], addr[1])
        record = DeviceRecord.from_datagram(data, addr)
        self.devices.append(record)
        logger.debug("Discovered: id=%s model=%s location=%s",
                     record.id, record.model, record.location)

    def error_received(self, exc: Exception) -> None:
        logger.error("Discovery socket error: %s", exc)
        if self.error is None:
            self.error = exc
        self.failed.set()


def _create_multicast_socket(
    group: str = MULTICAST_GROUP,
    local_port: int = DISCOVERY_LOCAL_PORT,
    bind_ip: str = "0.0.0.0",
) -> socket.socket:
    """Bind the receiving socket and join the multicast group."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MULTICAST_TTL)
        sock.bind((bind_ip, local_port))
    except OSError as e:
        sock.close()
        raise DiscoverySocketError(
            f"Cannot bind discovery socket to {bind_ip}:{local_port}: {e}"
        ) from e

    try:
        mreq = struct.pack("=4sl", socket.inet_aton(group), socket.INADDR_ANY)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
    except OSError as e:
        sock.close()
        raise DiscoverySocketError(f"Cannot join multicast group {group}: {e}") from e

    sock.setblocking(False)
    return sock


async def discover_devices(
    timeout: float = DISCOVERY_TIMEOUT,
    group: str = MULTICAST_GROUP,
    port: int = MULTICAST_PORT,
    local_port: int = DISCOVERY_LOCAL_PORT,
    bind_ip: str = "0.0.0.0",
) -> List[DeviceRecord]:
    """Multicast one probe and collect Yeelight replies for ``timeout`` seconds.

    Returns DeviceRecords in arrival order (duplicates included).

    Raises DiscoverySocketError if the socket cannot be bound or joined to
    the group, or if a send/receive error cuts the window short. In the
    latter case the records collected so far are on ``exc.devices``.
    """
    loop = asyncio.get_running_loop()
    sock = _create_multicast_socket(group, local_port, bind_ip)
    started = loop.time()

    try:
        transport, protocol = await loop.create_datagram_endpoint(
            _DiscoveryProtocol, sock=sock,
        )
    except OSError as e:
        sock.close()
        raise DiscoverySocketError(f"Cannot open discovery endpoint: {e}") from e

    try:
        probe = build_search_request(group, port)
        try:
            transport.sendto(probe, (group, port))
        except OSError as e:
            protocol.error_received(e)
        else:
            logger.info("Sent %d bytes to %s:%d", len(probe), group, port)

        remaining = max(0.0, timeout - (loop.time() - started))
        try:
            await asyncio.wait_for(protocol.failed.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            pass
    finally:
        transport.close()

    if protocol.error is not None:
        raise DiscoverySocketError(
            f"Discovery interrupted: {protocol.error}", devices=protocol.devices,
        )

    logger.info("Discovery finished: %d repl%s",
                len(protocol.devices), "y" if len(protocol.devices) == 1 else "ies")
    return protocol.devices
