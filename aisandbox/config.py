"""Settings dataclasses and YAML loader."""

from __future__ import annotations

from dataclasses import dataclass, field, fields

import yaml

from aisandbox.errors import ConfigError

DEFAULT_MODEL_ID = "mistralai/Mistral-7B-Instruct-v0.3"


@dataclass
class InstanceSettings:
    type: str = "g2-gpu-rtx4000a1-s"
    region: str = "us-ord"
    image: str = "linode/ubuntu22.04"


@dataclass
class ProvisionSettings:
    ssh_attempts: int = 30
    ssh_interval: float = 5
    settle_seconds: int = 60
    address_attempts: int = 10
    address_interval: float = 3


@dataclass
class BootstrapSettings:
    model_id: str = DEFAULT_MODEL_ID
    # When True a core service that never turns healthy fails the run instead
    # of being recorded as a caveat.
    require_core_health: bool = False
    core_listen_attempts: int = 60
    core_listen_interval: float = 5
    ui_health_attempts: int = 30
    ui_health_interval: float = 2
    core_health_attempts: int = 60
    core_health_interval: float = 5


@dataclass
class ValidationSettings:
    ui_attempts: int = 30
    ui_interval: float = 5
    api_attempts: int = 60
    api_interval: float = 10


@dataclass
class Settings:
    instance: InstanceSettings = field(default_factory=InstanceSettings)
    provision: ProvisionSettings = field(default_factory=ProvisionSettings)
    bootstrap: BootstrapSettings = field(default_factory=BootstrapSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)


_SECTIONS = {f.name: f.default_factory for f in fields(Settings)}


def default_settings() -> Settings:
    return Settings()


def load_settings(path: str | None) -> Settings:
    """Load settings from a YAML file; ``None`` gives the defaults.

    Unknown sections or keys, and attempt or interval values that cannot be
    polled with, raise :class:`ConfigError` before anything is provisioned.
    """
    if path is None:
        return default_settings()

    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        return default_settings()
    if not isinstance(raw, dict):
        raise ConfigError(f"Config YAML must be a mapping, got {type(raw).__name__}")

    unknown_sections = set(raw) - set(_SECTIONS)
    if unknown_sections:
        raise ConfigError(
            f"Unknown top-level keys in config: {sorted(unknown_sections)}. "
            f"Allowed: {sorted(_SECTIONS)}"
        )

    sections = {}
    for name, factory in _SECTIONS.items():
        section_raw = raw.get(name, {}) or {}
        cls = factory
        _validate_keys(name, section_raw, frozenset(f.name for f in fields(cls)))
        sections[name] = cls(**section_raw)
    settings = Settings(**sections)
    validate_settings(settings)
    return settings


def _validate_keys(section: str, raw: dict, allowed: frozenset[str]) -> None:
    if not isinstance(raw, dict):
        raise ConfigError(f"'{section}' must be a mapping, got {type(raw).__name__}")
    unknown = set(raw) - allowed
    if unknown:
        raise ConfigError(
            f"Unknown keys in '{section}': {sorted(unknown)}. "
            f"Allowed: {sorted(allowed)}"
        )


def validate_settings(settings: Settings) -> None:
    """Reject retry and timing values the poller cannot run with."""
    for name in _SECTIONS:
        section = getattr(settings, name)
        for f in fields(section):
            value = getattr(section, f.name)
            if f.name.endswith("_attempts"):
                _check_number(name, f.name, value, minimum=1, integral=True)
            elif f.name.endswith("_interval"):
                _check_number(name, f.name, value, minimum=0, exclusive=True)
            elif f.name == "settle_seconds":
                _check_number(name, f.name, value, minimum=0, integral=True)


def _check_number(section, key, value, *, minimum, integral=False, exclusive=False):
    kinds = int if integral else (int, float)
    if isinstance(value, bool) or not isinstance(value, kinds):
        kind = "an integer" if integral else "a number"
        raise ConfigError(f"'{section}.{key}' must be {kind}, got {value!r}")
    if value < minimum or (exclusive and value == minimum):
        bound = f"> {minimum}" if exclusive else f">= {minimum}"
        raise ConfigError(f"'{section}.{key}' must be {bound}, got {value}")
