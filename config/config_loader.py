# config/config_loader.py
"""
Config loader module for the client YAML configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from uasession.errors import ConfigurationError
from uasession.protocols.engine import Endpoint, MessageSecurityMode

DEFAULT_CLIENT_CONFIG = {
    "application": {
        "name": "uasession client",
        "uri": "urn:uasession:client",
    },
    "endpoint": {
        "url": "opc.tcp://localhost:4840/",
        "security_policy": "None",
        "security_mode": "none",
    },
    "session": {
        "name": "uasession",
        "timeout": 60.0,
        "keepalive_interval": 5.0,
        "reconnect_period": 30.0,
        "reconnect_timeout": 10.0,
        "close_timeout": 5.0,
    },
    "subscriptions": {
        "default_publishing_interval": 1000.0,
        "default_sampling_interval": 1.0,
        "default_queue_size": 1,
    },
    "security": {
        "auto_accept_untrusted": False,
    },
    "logging": {
        "level": "INFO",
        "log_dir": None,
    },
}

_SECURITY_MODES = {
    "none": MessageSecurityMode.NONE,
    "sign": MessageSecurityMode.SIGN,
    "signandencrypt": MessageSecurityMode.SIGN_AND_ENCRYPT,
    "sign_and_encrypt": MessageSecurityMode.SIGN_AND_ENCRYPT,
}


class ConfigLoader:
    """Loads the client configuration file and fills in defaults."""

    def __init__(self, config_dir="config"):
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def load_all(self):
        """Load client.yml and merge it over the defaults."""
        config = {}

        client_path = self.config_dir / "client.yml"
        if client_path.exists():
            with open(client_path) as f:
                client_data = yaml.safe_load(f) or {}
        else:
            client_data = DEFAULT_CLIENT_CONFIG
            self._save_client(client_data)

        for section, defaults in DEFAULT_CLIENT_CONFIG.items():
            loaded = client_data.get(section) or {}
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Section '{section}' in {client_path} must be a mapping")
            config[section] = {**defaults, **loaded}

        return config

    def _save_client(self, client_config):
        """Save client configuration to file."""
        client_path = self.config_dir / "client.yml"
        with open(client_path, "w") as f:
            yaml.dump(client_config, f, default_flow_style=False, sort_keys=False)
        print(f"[INFO] Created default client config at {client_path}")


@dataclass
class SessionSettings:
    name: str = "uasession"
    timeout: float = 60.0
    keepalive_interval: float = 5.0
    reconnect_period: float = 30.0
    reconnect_timeout: float = 10.0
    close_timeout: float = 5.0


@dataclass
class SubscriptionSettings:
    default_publishing_interval: float = 1000.0
    default_sampling_interval: float = 1.0
    default_queue_size: int = 1


@dataclass
class ClientConfig:
    """Typed view of the merged client configuration."""

    application_name: str | None
    application_uri: str = "urn:uasession:client"
    endpoint: Endpoint | None = None
    session: SessionSettings = field(default_factory=SessionSettings)
    subscriptions: SubscriptionSettings = field(default_factory=SubscriptionSettings)
    auto_accept_untrusted: bool = False
    log_level: str = "INFO"
    log_dir: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientConfig":
        application = data.get("application") or {}
        endpoint_data = data.get("endpoint") or {}
        session_data = data.get("session") or {}
        subscription_data = data.get("subscriptions") or {}
        security = data.get("security") or {}
        logging_data = data.get("logging") or {}

        endpoint = None
        if endpoint_data.get("url"):
            mode_name = str(endpoint_data.get("security_mode", "none")).lower()
            if mode_name not in _SECURITY_MODES:
                raise ConfigurationError(f"Unknown security mode: {mode_name}")
            endpoint = Endpoint(
                url=endpoint_data["url"],
                security_policy=endpoint_data.get("security_policy", "None"),
                security_mode=_SECURITY_MODES[mode_name],
            )

        try:
            session = SessionSettings(**session_data)
            subscriptions = SubscriptionSettings(**subscription_data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration key: {e}") from e

        return cls(
            application_name=application.get("name"),
            application_uri=application.get("uri", "urn:uasession:client"),
            endpoint=endpoint,
            session=session,
            subscriptions=subscriptions,
            auto_accept_untrusted=bool(security.get("auto_accept_untrusted", False)),
            log_level=logging_data.get("level", "INFO"),
            log_dir=logging_data.get("log_dir"),
        )

    @classmethod
    def load(cls, config_dir="config") -> "ClientConfig":
        return cls.from_dict(ConfigLoader(config_dir).load_all())

    def validate(self) -> None:
        """Raise ConfigurationError if the application identity is missing."""
        if not self.application_name:
            raise ConfigurationError("Client configuration has no application name")
        if self.session.reconnect_period <= 0:
            raise ConfigurationError("session.reconnect_period must be positive")
        if self.session.keepalive_interval <= 0:
            raise ConfigurationError("session.keepalive_interval must be positive")
