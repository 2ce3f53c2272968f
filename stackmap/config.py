"""
Settings, read from ``stackmap.yaml`` (when present) and ``STACKMAP_*``
environment variables. CLI flags are applied on top by the caller.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Set

import yaml

from stackmap.errors import ConfigurationError
from stackmap.models.resource import RESOURCE_TYPES
from stackmap.state import DEFAULT_STATE_PATH

DEFAULT_CONFIG_FILE = "stackmap.yaml"
ENV_PREFIX = "STACKMAP_"


def _default_mutable() -> Dict[str, List[str]]:
    return {name: sorted(info.mutable) for name, info in RESOURCE_TYPES.items() if info.mutable}


@dataclass
class StackConfig:
    state_path: str = DEFAULT_STATE_PATH
    runtime: str = "docker"
    parallelism: int = 4
    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 10.0
    secret_seed: Optional[str] = None
    docker_binary: str = "docker"
    docker_timeout: float = 60.0
    log_level: str = "WARNING"
    mutable_attributes: Dict[str, List[str]] = field(default_factory=_default_mutable)

    def mutable_for(self, resource_type: str) -> Set[str]:
        return set(self.mutable_attributes.get(resource_type, []))

    def validate(self) -> None:
        if self.runtime not in ("docker", "memory"):
            raise ConfigurationError(f"Unknown runtime '{self.runtime}' (expected docker or memory)")
        if self.parallelism < 1:
            raise ConfigurationError("parallelism must be at least 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigurationError("backoff values must not be negative")


_SCALARS = {f.name: f.type for f in fields(StackConfig) if f.name != "mutable_attributes"}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    kind = _SCALARS[name]
    try:
        if kind is int:
            return int(value)
        if kind is float:
            return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for '{name}': {value!r}") from None
    return str(value)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> StackConfig:
    """
    Build the effective configuration. An explicit ``path`` must exist; the
    default ``stackmap.yaml`` is optional.
    """
    environ = os.environ if environ is None else environ
    config = StackConfig()

    config_file = path or environ.get(f"{ENV_PREFIX}CONFIG") or DEFAULT_CONFIG_FILE
    if os.path.exists(config_file):
        try:
            with open(config_file, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read {config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_file} must contain a mapping")
        _apply(config, data, config_file)
    elif path:
        raise ConfigurationError(f"Config file {path} does not exist")

    for name in _SCALARS:
        env_value = environ.get(ENV_PREFIX + name.upper())
        if env_value is not None:
            setattr(config, name, _coerce(name, env_value))

    config.validate()
    return config


def _apply(config: StackConfig, data: Dict[str, Any], source: str) -> None:
    for key, value in data.items():
        if key == "mutable_attributes":
            if not isinstance(value, dict):
                raise ConfigurationError(f"{source}: mutable_attributes must map type -> [attributes]")
            # Entries replace the built-in list for that type
            for resource_type, attrs in value.items():
                config.mutable_attributes[str(resource_type)] = [str(a) for a in (attrs or [])]
        elif key in _SCALARS:
            setattr(config, key, _coerce(key, value))
        else:
            raise ConfigurationError(f"{source}: unknown setting '{key}'")
