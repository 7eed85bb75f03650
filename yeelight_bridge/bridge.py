"""Yeelight LAN Bridge main entry point.

Restores cached accessories, discovers bulbs on the LAN, and serves the
accessory HTTP API. Runs a single asyncio event loop.

Usage:
    yeelight-bridge --discover
    yeelight-bridge --http-port 8581
    yeelight-bridge --discovery-timeout 3 --log-level DEBUG
"""

import asyncio
import logging
import sys
from typing import List, Optional

from .api import AccessoryAPI
from .config import BridgeConfig
from .discovery import discover_devices
from .exceptions import DiscoverySocketError
from .platform import YeelightPlatform

logger = logging.getLogger(__name__)


class Bridge:
    """Orchestrates platform and HTTP API.

    Data flow:
      discover_devices() → reconcile() → YeelightPlatform.accessories
      AccessoryAPI request → BulbAccessory → send_command() → TCP to bulb
    """

    def __init__(self, config: BridgeConfig):
        self._config = config
        self._running = False
        self._stopped = asyncio.Event()
        self.platform = YeelightPlatform(config)
        self._api = AccessoryAPI(
            self.platform,
            http_port=config.http_port,
            bind_ip=config.bind_ip,
        )

    async def start(self) -> None:
        cfg = self._config

        logger.info("=" * 60)
        logger.info("Yeelight LAN Bridge")
        logger.info("=" * 60)
        logger.info("  Discovery  : %s:%d (reply port %d, %.1fs window)",
                    cfg.multicast_group, cfg.multicast_port,
                    cfg.discovery_port, cfg.discovery_timeout)
        logger.info("  HTTP API   : http://%s:%d", cfg.bind_ip, cfg.http_port)
        logger.info("  Cache      : %s", cfg.cache_path)
        logger.info("=" * 60)

        # 1. Restore accessories from the previous run
        restored = self.platform.load_cache()
        logger.info("Restored %d cached accessor%s", restored, "y" if restored == 1 else "ies")

        # 2. Discover and reconcile
        await self.platform.discover_and_register()
        self.platform.save_cache()

        # 3. Serve the API
        await self._api.start()

        self._running = True
        logger.info("Bridge is READY with %d accessor%s",
                    len(self.platform.accessories),
                    "y" if len(self.platform.accessories) == 1 else "ies")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        logger.info("Shutting down bridge...")
        await self._api.stop()
        self.platform.save_cache()
        self._stopped.set()
        logger.info("Bridge stopped.")

    async def run_forever(self) -> None:
        """Start and run until stop() or cancellation."""
        await self.start()
        try:
            await self._stopped.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)-7s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


async def run_discover(config: BridgeConfig) -> int:
    """--discover mode: print a table of responding bulbs."""
    print("Searching for Yeelight bulbs on the network...")
    try:
        devices = await discover_devices(
            timeout=config.discovery_timeout,
            group=config.multicast_group,
            port=config.multicast_port,
            local_port=config.discovery_port,
            bind_ip=config.bind_ip,
        )
    except DiscoverySocketError as e:
        print(f"Discovery failed: {e}")
        devices = e.devices
        if not devices:
            return 1

    seen = set()
    unique = []
    for device in devices:
        if device.id is None or device.id in seen:
            continue
        seen.add(device.id)
        unique.append(device)

    if unique:
        print(f"\nFound {len(unique)} device(s):\n")
        print(f"  {'ID':<20} {'Model':<12} {'Power':<6} {'Location'}")
        print(f"  {'-'*18:<20} {'-'*10:<12} {'-'*5:<6} {'-'*28}")
        for d in unique:
            print(f"  {d.id:<20} {d.model:<12} {d.power:<6} {d.location or ''}")
    else:
        print("No Yeelight bulbs found on the network.")
        print("Make sure \"LAN Control\" is enabled for each bulb in the Yeelight app.")
    return 0


async def async_main(argv: Optional[List[str]] = None) -> int:
    config = BridgeConfig.from_cli(argv)

    setup_logging(config.log_level)

    if config.discover:
        return await run_discover(config)

    bridge = Bridge(config)

    # Signal handlers are unavailable on Windows; KeyboardInterrupt covers it
    if sys.platform != "win32":
        import signal
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(bridge.stop()))

    await bridge.run_forever()
    return 0


def main() -> None:
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\nInterrupted.")


if __name__ == "__main__":
    main()
