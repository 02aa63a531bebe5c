"""
Configuration management for chatflow.
"""

from typing import Any

from chatflow.utils import load_config, save_config


class Config:
    """Configuration manager for chatflow."""

    def __init__(self):
        self._config = load_config()
        self._ensure_defaults()

    def _ensure_defaults(self):
        """Ensure default values exist."""
        defaults = {
            "version": "1.0.0",
            "gateway": {
                "host": "127.0.0.1",
                "port": 3210,
                "log_level": "INFO",
            },
        }

        for key, value in defaults.items():
            if key not in self._config:
                self._config[key] = value
            elif isinstance(value, dict) and isinstance(self._config[key], dict):
                for subkey, subvalue in value.items():
                    if subkey not in self._config[key]:
                        self._config[key][subkey] = subvalue

    def save(self) -> None:
        """Save configuration to file."""
        save_config(self._config)

    def _set_gateway(self, key: str, value: Any) -> None:
        if "gateway" not in self._config:
            self._config["gateway"] = {}
        self._config["gateway"][key] = value

    @property
    def gateway_host(self) -> str:
        return self._config.get("gateway", {}).get("host", "127.0.0.1")

    @gateway_host.setter
    def gateway_host(self, value: str) -> None:
        self._set_gateway("host", value)

    @property
    def gateway_port(self) -> int:
        return self._config.get("gateway", {}).get("port", 3210)

    @gateway_port.setter
    def gateway_port(self, value: int) -> None:
        self._set_gateway("port", value)

    @property
    def log_level(self) -> str:
        return self._config.get("gateway", {}).get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._set_gateway("log_level", value)

    @property
    def gateway_url(self) -> str:
        return f"http://{self.gateway_host}:{self.gateway_port}"

    def to_dict(self) -> dict[str, Any]:
        """Return config as dictionary."""
        return self._config.copy()
