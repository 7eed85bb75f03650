"""Yeelight LAN protocol: discovery messages and control commands.

Pure functions, no I/O, no state. Two wire formats live here:

  1. Discovery (UDP multicast, SSDP-like): an HTTP-style M-SEARCH request
     goes out, devices answer with an HTTP-style header block.
  2. Control (TCP, port from the discovery "Location" header): one JSON
     object per line, CRLF terminated.

Reference: Yeelight WiFi Light Inter-Operation Specification.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

# Discovery
MULTICAST_GROUP = "239.255.255.250"
MULTICAST_PORT = 1982
SEARCH_TARGET = "wifi_bulb"

# Control
DEFAULT_CONTROL_PORT = 55443
REQUEST_ID = 1
DEFAULT_TRANSITION_MS = 500
LINE_END = b"\r\n"


def build_search_request(
    group: str = MULTICAST_GROUP,
    port: int = MULTICAST_PORT,
    search_target: str = SEARCH_TARGET,
) -> bytes:
    """Build the M-SEARCH probe datagram.

    Layout (every line CRLF terminated):
      M-SEARCH * HTTP/1.1
      HOST: 239.255.255.250:1982
      MAN: "ssdp:discover"
      ST: wifi_bulb
    """
    lines = [
        "M-SEARCH * HTTP/1.1",
        f"HOST: {group}:{port}",
        'MAN: "ssdp:discover"',
        f"ST: {search_target}",
    ]
    return "".join(line + "\r\n" for line in lines).encode("ascii")


def parse_response(data: Union[str, bytes]) -> Dict[str, str]:
    """Parse an HTTP-style header block into a dict.

    Keys are lower-cased and trimmed, values trimmed. Only the first ':' on
    a line separates key from value, so "Location: yeelight://1.2.3.4:55443"
    keeps its port. Lines without ':' are skipped. A repeated key keeps the
    last value. Never raises.
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")

    fields: Dict[str, str] = {}
    for line in data.split("\n"):
        key, sep, value = line.partition(":")
        if not sep:
            continue
        fields[key.strip().lower()] = value.strip()
    return fields


def parse_location(location: Optional[str]) -> Optional[Tuple[str, int]]:
    """Split "yeelight://host:port" into (host, port).

    Returns None for a missing or malformed location.
    """
    if not location or "://" not in location:
        return None
    _, _, netloc = location.partition("://")
    netloc = netloc.split("/", 1)[0]
    host, sep, port_str = netloc.rpartition(":")
    host = host.strip("[]")
    if not sep or not host:
        return None
    try:
        port = int(port_str)
    except ValueError:
        return None
    if not 0 < port < 65536:
        return None
    return host, port


@dataclass(frozen=True)
class Command:
    method: str
    params: List[Any] = field(default_factory=list)

    def encode(self) -> bytes:
        """Serialize as one JSON line, CRLF terminated.

        The request id is constant: a connection carries one command at a time.
        """
        payload = {"id": REQUEST_ID, "method": self.method, "params": list(self.params)}
        return json.dumps(payload, separators=(",", ":")).encode("utf-8") + LINE_END


def build_set_power(on: bool, transition_ms: int = DEFAULT_TRANSITION_MS) -> Command:
    """set_power ["on"|"off", "smooth", <ms>]"""
    return Command("set_power", ["on" if on else "off", "smooth", int(transition_ms)])


def build_get_power() -> Command:
    """get_prop ["power"]"""
    return Command("get_prop", ["power"])


def is_notification(message: Dict[str, Any]) -> bool:
    """Unsolicited state push ("props" notification), not a command reply."""
    return "method" in message and "id" not in message


def power_is_on(result: Optional[List[Any]]) -> bool:
    """Interpret a get_prop ["power"] result. Anything but "on" is off."""
    return bool(result) and result[0] == "on"
