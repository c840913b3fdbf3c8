"""Exception types for provisioning and bootstrap failures."""

from __future__ import annotations


class AISandboxError(RuntimeError):
    """Base class for failures surfaced to the operator."""


class ProvisioningError(AISandboxError):
    """Instance creation or lookup failed; carries the provider's raw message."""


class BootstrapError(AISandboxError):
    """A fatal bootstrap phase failed."""

    def __init__(self, phase, cause: str):
        super().__init__(f"{phase.label}: {cause}")
        self.phase = phase
        self.cause = cause


class ConfigError(ValueError):
    """Configuration file is malformed or has unknown keys."""
