"""Data models for provisioning a GPU node and bootstrapping its services."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class InstanceSpec:
    """What gets submitted to the compute provider. Immutable once built."""

    type: str
    region: str
    image: str
    label: str
    root_pass: str
    user_data: str  # base64-encoded bootstrap payload
    authorized_keys: tuple[str, ...] = ()


@dataclass
class InstanceRecord:
    """A created instance, as returned by the provider."""

    instance_id: str
    spec: InstanceSpec
    instance_ip: Optional[str] = None  # may be missing right after creation
    created_at: str = ""
    status: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ServiceDescriptor:
    """One container in the service manifest."""

    name: str
    image: str
    exposed_port: int
    internal_port: int
    health_probe: str
    container_name: str = ""
    depends_on: Optional[str] = None  # started-after dependency, not healthy-after
    command: tuple[str, ...] = ()
    volumes: tuple[str, ...] = ()
    environment: tuple[str, ...] = ()
    gpu: bool = False


class DeploymentPhase(enum.Enum):
    """Bootstrap phases in execution order. FAILED is terminal."""

    INITIALIZING = (0, "Initializing")
    DEPENDENCIES_INSTALLING = (1, "Installing dependencies")
    GPU_CONFIGURING = (2, "Configuring GPU")
    MANIFEST_GENERATED = (3, "Generating service manifest")
    CORE_STARTING = (4, "Starting API service")
    CORE_LISTENING = (5, "Waiting for API port")
    DEPENDENT_STARTING = (6, "Starting UI service")
    PERSISTENCE_VALIDATED = (7, "Validating chat persistence")
    CORE_HEALTHY = (8, "Checking service health")
    API_VALIDATED = (9, "Validating OpenAI API compatibility")
    COMPLETE = (10, "Complete")
    FAILED = (99, "Failed")

    def __init__(self, order: int, label: str):
        self.order = order
        self.label = label

    @property
    def terminal(self) -> bool:
        return self in (DeploymentPhase.COMPLETE, DeploymentPhase.FAILED)


class PollOutcome(enum.Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    UNREACHABLE = "unreachable"


@dataclass
class HealthCheckResult:
    """Outcome of one readiness poll. Not persisted."""

    target: str
    attempts: int
    elapsed: float
    outcome: PollOutcome
    detail: str = ""

    @property
    def ready(self) -> bool:
        return self.outcome is PollOutcome.READY


@dataclass(frozen=True)
class Caveat:
    """A degraded-but-continuing condition recorded during a run."""

    phase: DeploymentPhase
    message: str


@dataclass
class DeploymentState:
    """The single mutable record threaded through every bootstrap phase."""

    model_id: str
    phase: DeploymentPhase = DeploymentPhase.INITIALIZING
    history: list[DeploymentPhase] = field(
        default_factory=lambda: [DeploymentPhase.INITIALIZING]
    )
    caveats: list[Caveat] = field(default_factory=list)
    health: dict[str, HealthCheckResult] = field(default_factory=dict)
    failed_phase: Optional[DeploymentPhase] = None
    failure_cause: Optional[str] = None

    def advance(self, phase: DeploymentPhase) -> None:
        """Move to ``phase``. Re-entering the current phase is a retry."""
        if self.phase.terminal:
            raise ValueError(f"Deployment already finished ({self.phase.label})")
        if phase is DeploymentPhase.FAILED:
            raise ValueError("Use fail() to enter the FAILED phase")
        if phase.order < self.phase.order:
            raise ValueError(
                f"Cannot move backwards from {self.phase.name} to {phase.name}"
            )
        if phase is not self.phase:
            self.history.append(phase)
        self.phase = phase

    def fail(self, cause: str, phase: DeploymentPhase | None = None) -> None:
        if self.phase.terminal:
            raise ValueError(f"Deployment already finished ({self.phase.label})")
        self.failed_phase = phase or self.phase
        self.failure_cause = cause
        self.phase = DeploymentPhase.FAILED
        self.history.append(DeploymentPhase.FAILED)

    def caveat(self, message: str) -> Caveat:
        entry = Caveat(phase=self.phase, message=message)
        self.caveats.append(entry)
        return entry

    @property
    def succeeded(self) -> bool:
        return self.phase is DeploymentPhase.COMPLETE

    @property
    def failed(self) -> bool:
        return self.phase is DeploymentPhase.FAILED


@dataclass
class ProvisionRequest:
    """What the operator asks for."""

    model_id: str
    instance_type: str = "g2-gpu-rtx4000a1-s"
    region: str = "us-ord"
    image: str = "linode/ubuntu22.04"
    label: Optional[str] = None  # generated from a timestamp if None
    root_pass: Optional[str] = None  # generated if None
    ssh_key_path: Optional[str] = None  # first key under ~/.ssh if None
    settle_seconds: Optional[int] = None
    skip_validation: bool = False


@dataclass
class ValidationReport:
    """Result of probing the public endpoints of a new node."""

    ui: Optional[HealthCheckResult] = None
    api: Optional[HealthCheckResult] = None
    api_contract_ok: bool = False
    messages: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.ui and self.ui.ready and self.api and self.api.ready
                    and self.api_contract_ok)


@dataclass
class DeploymentResult:
    """Combined result returned to the operator."""

    instance_id: str
    label: str
    model_id: str
    root_pass: str
    instance_ip: Optional[str] = None
    ui_url: Optional[str] = None
    api_url: Optional[str] = None
    caveats: list[str] = field(default_factory=list)
    validation: Optional[ValidationReport] = None
    password_generated: bool = False


@dataclass
class PreflightCheck:
    """One account check run before an instance is created."""

    name: str
    passed: bool
    message: str
    # Shown by ``ai-sandbox check`` next to a failed check.
    fix_command: str | None = None


@dataclass
class PreflightResult:
    """All account checks for one provider; provisioning needs every one to pass."""

    provider: str
    checks: list[PreflightCheck] = field(default_factory=list)

    def add(self, name: str, passed: bool, message: str, fix_command: str | None = None) -> None:
        self.checks.append(PreflightCheck(name, passed, message, fix_command))

    @property
    def ok(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failed(self) -> list[PreflightCheck]:
        return [c for c in self.checks if not c.passed]

    def summary(self) -> str:
        """Failed check messages joined for a one-line error."""
        return "; ".join(f"[{c.name}] {c.message}" for c in self.failed)
