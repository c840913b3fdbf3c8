"""Provider registry: lookup compute providers by name."""

from __future__ import annotations

import importlib

from aisandbox.providers.base import ComputeProvider

_PROVIDERS: dict[str, type[ComputeProvider]] = {}

# Maps provider name → (module_path, class_name) for lazy loading.
PROVIDER_MODULES: dict[str, tuple[str, str]] = {
    "linode": ("aisandbox.providers.linode_provider", "LinodeProvider"),
}


def register(name: str, cls: type[ComputeProvider]) -> None:
    _PROVIDERS[name] = cls


def get_provider(name: str) -> ComputeProvider:
    """Instantiate a provider, importing its module on first use."""
    if name not in _PROVIDERS:
        entry = PROVIDER_MODULES.get(name)
        if not entry:
            raise ValueError(
                f"Unknown provider: {name!r}. Known providers: {sorted(PROVIDER_MODULES)}"
            )
        module_path, class_name = entry
        register(name, getattr(importlib.import_module(module_path), class_name))
    return _PROVIDERS[name]()


def list_providers() -> list[str]:
    return sorted(set(_PROVIDERS) | set(PROVIDER_MODULES))
