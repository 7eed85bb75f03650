"""Accessory platform: runs discovery and keeps the registered bulbs.

Startup order mirrors a dynamic accessory host:
  1. load_cache()  restores accessories registered in a previous run
  2. discover_and_register()  probes the LAN, reconciles replies against
     the restored accessories, then registers new bulbs and refreshes the
     context of known ones
  3. save_cache()  persists the result for the next start
"""

import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from .accessory import BulbAccessory
from .config import BridgeConfig
from .discovery import DeviceRecord, discover_devices
from .exceptions import DiscoverySocketError
from .reconcile import Action, KnownIdentity, apply_actions, reconcile

logger = logging.getLogger(__name__)

DiscoverFn = Callable[..., Awaitable[List[DeviceRecord]]]


class YeelightPlatform:
    def __init__(
        self,
        config: BridgeConfig,
        discover: DiscoverFn = discover_devices,
    ):
        self._config = config
        self._discover = discover
        self._cache_path = Path(config.cache_path).expanduser()
        self.accessories: Dict[str, BulbAccessory] = {}

    def _make_accessory(self, uuid: str, context: Dict[str, str]) -> BulbAccessory:
        return BulbAccessory(
            uuid,
            context,
            command_timeout=self._config.command_timeout,
            transition_ms=self._config.transition_ms,
        )

    # ── Cache ────────────────────────────────────────────────────────────

    def configure_accessory(self, uuid: str, context: Dict[str, str]) -> BulbAccessory:
        """Restore one cached accessory."""
        accessory = self._make_accessory(uuid, context)
        logger.info("Loading accessory from cache: %s", accessory.display_name)
        self.accessories[uuid] = accessory
        return accessory

    def load_cache(self) -> int:
        """Restore accessories saved by a previous run. Returns the count."""
        try:
            if not self._cache_path.exists():
                return 0
            data = json.loads(self._cache_path.read_text(encoding="utf-8"))
            entries = data.get("accessories", [])
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Ignoring unreadable accessory cache %s: %s", self._cache_path, e)
            return 0
        if not isinstance(entries, list):
            logger.warning("Ignoring unreadable accessory cache %s: \"accessories\" is not a list",
                           self._cache_path)
            return 0

        count = 0
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("uuid"):
                continue
            self.configure_accessory(entry["uuid"], entry.get("context") or {})
            count += 1
        return count

    def save_cache(self) -> None:
        data = {
            "accessories": [
                {"uuid": acc.uuid, "context": acc.context}
                for acc in self.accessories.values()
            ]
        }
        try:
            self._cache_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to save accessory cache: %s", e)

    # ── Discovery ────────────────────────────────────────────────────────

    @property
    def known_identities(self) -> List[KnownIdentity]:
        return [KnownIdentity(uuid, acc) for uuid, acc in self.accessories.items()]

    def get(self, uuid: str) -> Optional[BulbAccessory]:
        return self.accessories.get(uuid)

    def _register_new(self, record: DeviceRecord, key: str) -> BulbAccessory:
        logger.info("Adding new accessory: %s (%s)", record.id, record.model)
        accessory = self._make_accessory(key, record.fields)
        self.accessories[key] = accessory
        return accessory

    def _restore_existing(self, identity: KnownIdentity, record: DeviceRecord) -> BulbAccessory:
        accessory = identity.handle
        logger.info("Restoring existing accessory from cache: %s", accessory.display_name)
        accessory.update_context(record)
        return accessory

    async def discover_and_register(self) -> Dict[str, int]:
        """Run one discovery cycle and apply its outcome.

        A socket failure mid-window still registers the replies received
        before it.
        """
        cfg = self._config
        logger.info("Discovering devices...")
        try:
            records = await self._discover(
                timeout=cfg.discovery_timeout,
                group=cfg.multicast_group,
                port=cfg.multicast_port,
                local_port=cfg.discovery_port,
                bind_ip=cfg.bind_ip,
            )
        except DiscoverySocketError as e:
            logger.error("Discovery failed: %s (%d partial repl%s kept)",
                         e, len(e.devices), "y" if len(e.devices) == 1 else "ies")
            records = e.devices

        actions = reconcile(records, self.known_identities)
        before = set(self.accessories)
        apply_actions(actions, self._register_new, self._restore_existing)

        summary = {
            "replies": len(records),
            "created": len(set(self.accessories) - before),
            "restored": len({a.key for a in actions if a.action is Action.RESTORE}),
        }
        logger.info("Discovery: %d replies, %d new, %d restored",
                    summary["replies"], summary["created"], summary["restored"])
        return summary
