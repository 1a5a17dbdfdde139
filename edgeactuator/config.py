"""
Device configuration: JSON file in the actuatorConfig.json shape, then
EDGE_ACTUATOR_* environment overrides (container/systemd friendly).
"""
import json
import os
from dataclasses import dataclass, field, fields
from typing import Dict, Optional

from .errors import ConfigError

ENV_PREFIX = "EDGE_ACTUATOR_"
DEFAULT_CONFIG_PATH = os.getenv(ENV_PREFIX + "CONFIG", "config/actuatorConfig.json")

# file key -> dataclass field
FILE_KEYS = {
    "endpoint": "endpoint",
    "greengrass_discovery_port": "discovery_port",
    "root_ca_relative_path": "root_ca_path",
    "device_certificate_relative_path": "client_cert_path",
    "device_private_key_relative_path": "client_key_path",
    "thing_name": "thing_name",
    "client_id": "client_id",
    "mqtt_command_timeout_msecs": "mqtt_command_timeout_ms",
    "tls_handshake_timeout_msecs": "tls_handshake_timeout_ms",
    "discover_action_timeout_msecs": "discover_timeout_ms",
    "keepalive_interval_secs": "keepalive_secs",
    "is_clean_session": "clean_session",
    "discover_retry_count": "discover_retry_count",
    "discover_backoff_secs": "discover_backoff_secs",
    "connect_settle_secs": "connect_settle_secs",
    "post_ack_settle_secs": "post_ack_settle_secs",
    "output_dir": "output_dir",
    "metering_topic": "metering_topic",
    "initial_state": "initial_state",
    "metrics_port": "metrics_port",
    "log_level": "log_level",
}

PATH_FIELDS = ("root_ca_path", "client_cert_path", "client_key_path", "output_dir")


@dataclass
class DeviceConfig:
    endpoint: str = ""
    thing_name: str = ""
    root_ca_path: str = ""
    client_cert_path: str = ""
    client_key_path: str = ""
    client_id: str = ""
    discovery_port: int = 8443
    mqtt_command_timeout_ms: int = 20000
    tls_handshake_timeout_ms: int = 60000
    discover_timeout_ms: int = 300000
    keepalive_secs: int = 600
    clean_session: bool = True
    discover_retry_count: int = 10     # total discovery attempts
    discover_backoff_secs: float = 5.0
    connect_settle_secs: float = 0.5
    post_ack_settle_secs: float = 1.0
    output_dir: str = field(default_factory=os.getcwd)
    metering_topic: str = "/topic/state"
    initial_state: str = "off"
    metrics_port: int = 0              # 0 disables the Prometheus endpoint
    log_level: str = "INFO"

    @property
    def mqtt_command_timeout(self) -> float:
        return self.mqtt_command_timeout_ms / 1000.0

    @property
    def discover_timeout(self) -> float:
        return self.discover_timeout_ms / 1000.0

    @property
    def effective_client_id(self) -> str:
        return self.client_id or self.thing_name

    def validate(self):
        missing = [n for n in ("endpoint", "thing_name", "root_ca_path",
                               "client_cert_path", "client_key_path")
                   if not getattr(self, n)]
        if missing:
            raise ConfigError("missing configuration: " + ", ".join(missing))
        if self.discover_retry_count < 1:
            raise ConfigError("discover_retry_count must be >= 1")
        if not self.output_dir:
            self.output_dir = os.getcwd()
        return self


def _coerce(name, raw):
    kind = {f.name: f.type for f in fields(DeviceConfig)}[name]
    try:
        if kind in (bool, "bool"):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if kind in (int, "int"):
            return int(raw)
        if kind in (float, "float"):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"bad value for {name}: {raw!r}") from e
    return str(raw)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> DeviceConfig:
    """Build a validated DeviceConfig.

    Relative paths in the file are resolved against the file's directory.
    Environment variables win over the file, e.g. EDGE_ACTUATOR_THING_NAME.
    """
    environ = os.environ if environ is None else environ
    values = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"config file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"config file is not valid JSON: {path}") from e
        if not isinstance(raw, dict):
            raise ConfigError("config root must be a JSON object")
        base = os.path.dirname(os.path.abspath(path))
        for key, name in FILE_KEYS.items():
            if key in raw:
                values[name] = _coerce(name, raw[key])
        for name in PATH_FIELDS:
            if values.get(name) and not os.path.isabs(values[name]):
                values[name] = os.path.join(base, values[name])

    for f in fields(DeviceConfig):
        env_val = environ.get(ENV_PREFIX + f.name.upper())
        if env_val is not None and env_val != "":
            values[f.name] = _coerce(f.name, env_val)

    return DeviceConfig(**values).validate()
