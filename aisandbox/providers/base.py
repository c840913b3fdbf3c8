"""Abstract base class for compute providers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from aisandbox.models import InstanceRecord, InstanceSpec, PreflightResult


class ComputeProvider(ABC):
    """Creates, looks up and deletes compute instances.

    Errors from the provider's API are raised as ``ProvisioningError`` with
    the provider's own message, untouched.
    """

    @abstractmethod
    def name(self) -> str:
        """Provider identifier, e.g. 'linode'."""
        ...

    @abstractmethod
    def create_instance(self, spec: InstanceSpec) -> InstanceRecord:
        """Submit the spec. The returned record may lack a public address."""
        ...

    @abstractmethod
    def get_instance(self, instance_id: str, spec: InstanceSpec | None = None) -> InstanceRecord:
        """Fetch the current view of an instance."""
        ...

    @abstractmethod
    def delete_instance(self, instance_id: str) -> None:
        """Tear the instance down."""
        ...

    def preflight(self) -> PreflightResult:
        """Validate credentials before anything is created. Override per provider."""
        return PreflightResult(provider=self.name())
