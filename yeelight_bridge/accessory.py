"""Per-bulb accessory handler: on/off through the control channel."""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from .control import COMMAND_TIMEOUT, CommandResult, send_command
from .discovery import DeviceRecord
from .protocol import DEFAULT_TRANSITION_MS, build_get_power, build_set_power, power_is_on

logger = logging.getLogger(__name__)

MANUFACTURER = "Yeelight"


class BulbAccessory:
    """One registered bulb.

    ``context`` holds the discovery fields of the bulb (id, model,
    location, ...) and is what the accessory cache persists. Commands to
    the bulb are serialized: a connection only ever carries one command.
    """

    def __init__(
        self,
        uuid: str,
        context: Mapping[str, str],
        command_timeout: float = COMMAND_TIMEOUT,
        transition_ms: int = DEFAULT_TRANSITION_MS,
    ):
        self.uuid = uuid
        self.context: Dict[str, str] = dict(context)
        self._command_timeout = command_timeout
        self._transition_ms = transition_ms
        self._lock = asyncio.Lock()

    @classmethod
    def from_record(cls, uuid: str, record: DeviceRecord, **kwargs) -> "BulbAccessory":
        return cls(uuid, record.fields, **kwargs)

    @property
    def device_id(self) -> str:
        return self.context.get("id", "")

    @property
    def model(self) -> str:
        return self.context.get("model", "")

    @property
    def location(self) -> Optional[str]:
        return self.context.get("location") or None

    @property
    def display_name(self) -> str:
        return self.context.get("name") or self.model or self.device_id

    def update_context(self, record: DeviceRecord) -> None:
        """Refresh cached fields (e.g. a new DHCP address) from a rediscovery."""
        if record.location and record.location != self.location:
            logger.info("%s moved: %s -> %s", self.display_name, self.location, record.location)
        self.context.update(record.fields)

    async def _send(self, command) -> CommandResult:
        async with self._lock:
            return await send_command(self.location, command, timeout=self._command_timeout)

    async def set_on(self, on: bool) -> CommandResult:
        """Handle a SET of the On characteristic."""
        logger.info("Set %s On -> %s", self.display_name, on)
        return await self._send(build_set_power(on, self._transition_ms))

    async def get_on(self) -> bool:
        """Handle a GET of the On characteristic.

        Raises the result's ControlError when the bulb does not answer.
        """
        result = await self._send(build_get_power())
        result.raise_for_error()
        return power_is_on(result.result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "name": self.display_name,
            "id": self.device_id,
            "model": self.model,
            "location": self.location,
            "manufacturer": MANUFACTURER,
        }
