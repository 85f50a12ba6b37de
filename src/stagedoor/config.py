"""Configuration management for the stagedoor CLI.

Manages ~/.config/stagedoor/config.yaml (honouring XDG_CONFIG_HOME):
- url: stagedoor server URL
- user_id: the user the CLI acts as (sent as X-User-Id)
- gateway_token: bearer token for servers that require one
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "stagedoor"


def get_global_config_path() -> Path:
    """Get the global config file path."""
    return get_config_dir() / "config.yaml"


def ensure_config_dir() -> Path:
    """Ensure config directory exists and return its path."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


DEFAULT_SERVER_URL = "http://localhost:8000"


@dataclass
class GlobalConfig:
    """Global CLI configuration."""

    url: str = DEFAULT_SERVER_URL
    user_id: str | None = None
    gateway_token: str | None = None

    def save(self) -> None:
        """Save config to file."""
        ensure_config_dir()
        path = get_global_config_path()

        data: dict[str, Any] = {"url": self.url}
        if self.user_id:
            data["user_id"] = self.user_id
        if self.gateway_token:
            data["gateway_token"] = self.gateway_token

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load config from file, or return defaults."""
        path = get_global_config_path()

        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(
            url=data.get("url", DEFAULT_SERVER_URL),
            user_id=data.get("user_id"),
            gateway_token=data.get("gateway_token"),
        )

    @classmethod
    def exists(cls) -> bool:
        """Check if config file exists."""
        return get_global_config_path().exists()

    def get_client(self, user_id: str | None = None):
        """Get a Stagedoor client for this config, optionally acting as another user."""
        from .client import Stagedoor

        acting = user_id or self.user_id
        if not acting:
            raise ValueError("No user id configured; run 'stagedoor init' or pass --as-user")
        return Stagedoor(url=self.url, user_id=acting, gateway_token=self.gateway_token)


def init_wizard() -> GlobalConfig:
    """Interactive wizard for initial configuration."""
    print("Welcome to stagedoor!")
    print("Let's set up your configuration.\n")

    url = input(f"stagedoor server URL [{DEFAULT_SERVER_URL}]: ").strip()
    if not url:
        url = DEFAULT_SERVER_URL

    user_id = input("Act as user id: ").strip() or None

    print("\nIf the server was started with STAGEDOOR_GATEWAY_TOKEN, enter it here.")
    print("Leave blank for servers that trust the X-User-Id header alone.\n")

    gateway_token = input("Gateway token (optional): ").strip()
    if not gateway_token:
        gateway_token = None

    config = GlobalConfig(url=url, user_id=user_id, gateway_token=gateway_token)
    config.save()

    print(f"\nConfiguration saved to {get_global_config_path()}")
    return config
