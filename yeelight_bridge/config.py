"""Configuration management for the Yeelight LAN bridge."""

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


@dataclass
class BridgeConfig:
    discovery_timeout: float = 1.0
    discovery_port: int = 62142
    multicast_group: str = "239.255.255.250"
    multicast_port: int = 1982
    command_timeout: float = 5.0
    transition_ms: int = 500
    http_port: int = 8581
    bind_ip: str = "0.0.0.0"
    cache_path: str = "~/.yeelight-bridge-accessories.json"
    log_level: str = "INFO"
    discover: bool = False

    @classmethod
    def load(cls, config_path: str = "config.json") -> "BridgeConfig":
        """Load from JSON file. Missing fields keep defaults."""
        config = cls()
        path = Path(config_path)
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                try:
                    data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Invalid config file {path}: {e}") from e
            if not isinstance(data, dict):
                raise ValueError(f"Invalid config file {path}: expected a JSON object")
            field_names = {f.name for f in config.__dataclass_fields__.values()}
            for key, value in data.items():
                if key in field_names:
                    setattr(config, key, value)
        return config

    @classmethod
    def from_cli(cls, argv: Optional[List[str]] = None) -> "BridgeConfig":
        """Parse CLI args overlaid on JSON config."""
        parser = argparse.ArgumentParser(
            description="Yeelight LAN Bridge",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog=(
                "Examples:\n"
                "  yeelight-bridge --discover\n"
                "  yeelight-bridge --http-port 8581\n"
                "  yeelight-bridge --discovery-timeout 3 --log-level DEBUG\n"
            ),
        )
        parser.add_argument("--config", default="config.json", help="Path to config JSON file (default: config.json)")
        parser.add_argument("--discovery-timeout", dest="discovery_timeout", type=float, help="Seconds to collect discovery replies (default: 1.0)")
        parser.add_argument("--discovery-port", dest="discovery_port", type=int, help="Local UDP port for discovery replies (default: 62142)")
        parser.add_argument("--command-timeout", dest="command_timeout", type=float, help="Seconds to wait for a bulb reply (default: 5.0)")
        parser.add_argument("--transition", dest="transition_ms", type=int, help="Power on/off fade in milliseconds (default: 500)")
        parser.add_argument("--http-port", dest="http_port", type=int, help="HTTP port for the accessory API (default: 8581)")
        parser.add_argument("--bind", dest="bind_ip", help="Bind address for listeners (default: 0.0.0.0)")
        parser.add_argument("--cache", dest="cache_path", help="Accessory cache file (default: ~/.yeelight-bridge-accessories.json)")
        parser.add_argument("--log-level", dest="log_level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level (default: INFO)")
        parser.add_argument("--discover", action="store_true", default=None, help="Discover Yeelight bulbs on the network and exit")

        args = parser.parse_args(argv)

        # Load JSON config first
        try:
            config = cls.load(args.config)
        except ValueError as e:
            parser.error(str(e))

        # Override with any CLI args that were explicitly provided
        for key, value in vars(args).items():
            if key == "config":
                continue
            if value is not None:
                setattr(config, key, value)

        return config
