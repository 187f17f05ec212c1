"""
SNMP Poller - Configuration.

Poller settings (pydantic) and the option merging rules used when a
request is bound to a session.

Option names follow the classic SNMP session arguments:

    version        v1, v2c or v3 (anything containing "1" or "3" works)
    community      v1/v2c only
    username       v3 only
    authkey, authpassword, authprotocol     v3 only
    privkey, privpassword, privprotocol     v3 only
    port, timeout, retries                  all versions

YAML layout (either flat or under a ``poller:`` key):

    poller:
      concurrent: 50
      master_timeout: 30
      defaults:
        version: v2c
        community: public
        timeout: 2
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import SNMPVersion, TargetKey


log = logging.getLogger("snmp_poller.config")


V3_ONLY_OPTIONS = (
    "username",
    "authkey",
    "authpassword",
    "authprotocol",
    "privkey",
    "privpassword",
    "privprotocol",
)

# Options dropped for each version
EXCLUDE = {
    SNMPVersion.V1: V3_ONLY_OPTIONS,
    SNMPVersion.V2C: V3_ONLY_OPTIONS,
    SNMPVersion.V3: ("community",),
}

SESSION_OPTIONS = frozenset(
    ("version", "community", "port", "timeout", "retries") + V3_ONLY_OPTIONS
)


class PollerSettings(BaseModel):
    """Engine-wide poller configuration."""
    concurrent: int = Field(
        default=20, ge=0,
        description="Max operations in flight; 0 queues without dispatching until flush()",
    )
    master_timeout: float = Field(
        default=0, ge=0,
        description="Seconds for the complete run; 0 disables",
    )
    poll_interval: float = Field(
        default=0.1, gt=0,
        description="Granularity of the polling fallback for engines without descriptors",
    )
    defaults: Dict[str, Any] = Field(
        default_factory=dict,
        description="Session options merged under per-call options",
    )


def normalize_version(version: Any) -> SNMPVersion:
    """
    Map any version spelling to one of the three version tags.

    "1", "v1", 1 -> v1; "3", "v3", "snmpv3" -> v3; everything else -> v2c.
    """
    if isinstance(version, SNMPVersion):
        return version
    text = '' if version is None else str(version)
    if '1' in text:
        return SNMPVersion.V1
    if '3' in text:
        return SNMPVersion.V3
    return SNMPVersion.V2C


def effective_options(
    defaults: Optional[Mapping[str, Any]],
    call_options: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """
    Merge defaults under per-call options and normalize the result.

    A call option that is missing or None takes the default. ``version`` is
    always present in the result, and options that do not apply to it are
    dropped. Neither input is modified.
    """
    merged = dict(call_options or {})
    for name, value in (defaults or {}).items():
        if merged.get(name) is None:
            merged[name] = value

    version = normalize_version(merged.get("version"))
    merged["version"] = version
    for name in EXCLUDE[version]:
        merged.pop(name, None)
    return merged


def pool_key(address: str, options: Mapping[str, Any]) -> TargetKey:
    """Derive the target key from normalized options."""
    return TargetKey(
        address=address,
        version=normalize_version(options.get("version")),
        community=options.get("community"),
        username=options.get("username"),
    )


def load_yaml_config(yaml_path: Path) -> Dict[str, Any]:
    with open(yaml_path) as f:
        return yaml.safe_load(f) or {}


def load_settings(path: Union[str, Path]) -> PollerSettings:
    """
    Load poller settings from a YAML file.

    Raises:
        ConfigError: missing/unreadable file or invalid values
    """
    path = Path(path)
    try:
        data = load_yaml_config(path)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    section = data.get("poller", data)
    try:
        settings = PollerSettings(**section)
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"Invalid config {path}: {e}") from e

    log.debug(f"Loaded settings from {path}: concurrent={settings.concurrent}, "
              f"master_timeout={settings.master_timeout}")
    return settings
