"""First-boot bootstrap: runs on the new node and brings up the service stack.

The run is a fixed sequence of phases threaded through one
:class:`~aisandbox.models.DeploymentState`. A phase either completes, records
a caveat and lets the run continue, or raises :class:`BootstrapError`, which
ends the run. Whatever happens, the terminal status is written last.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import requests

from aisandbox.config import BootstrapSettings
from aisandbox.errors import BootstrapError
from aisandbox.executor import CommandExecutor, SubprocessExecutor
from aisandbox.gpu import ensure_nvidia_drivers
from aisandbox.manifest import COMPOSE_FILENAME, CORE_PORT, UI_PORT, generate_manifest
from aisandbox.models import DeploymentPhase, DeploymentState
from aisandbox.poller import poll, wait_for_http, wait_for_port
from aisandbox.status import AccessInfo, StatusReporter
from aisandbox.validator import UI_READY_STATUSES, check_api_contract, core_health_probe

logger = logging.getLogger(__name__)

METADATA_URL = "http://169.254.169.254/v1"
ADDRESS_FALLBACK = "YOUR_INSTANCE_IP"
COMPOSE_VERSION = "v2.24.0"


@dataclass
class BootstrapConfig:
    """Where things live on the node and how long to wait for them."""

    model_id: str
    settings: BootstrapSettings = field(default_factory=BootstrapSettings)
    model_dir: str = "/opt/models"
    data_dir: str = "/opt/open-webui"  # UI chat history; must stay writable
    compose_dir: str = "/opt/ai-sandbox"
    status_file: str = "/etc/motd"
    log_dir: str = "/var/log/ai-sandbox"
    dir_mode: int = 0o755
    ui_settle_seconds: float = 10
    api_warmup_seconds: float = 3
    public_address: Optional[str] = None

    @property
    def directories(self) -> tuple[str, ...]:
        return (self.model_dir, self.data_dir, self.compose_dir)

    @property
    def compose_file(self) -> str:
        return str(Path(self.compose_dir) / COMPOSE_FILENAME)

    @property
    def require_core_health(self) -> bool:
        return self.settings.require_core_health


@dataclass
class InstallStep:
    description: str
    args: tuple[str, ...]
    required: bool = True
    timeout: float = 1800


def _sh(script: str) -> tuple[str, ...]:
    return ("bash", "-c", script)


def dependency_steps() -> list[InstallStep]:
    """Docker engine, docker-compose and the NVIDIA container toolkit."""
    return [
        InstallStep("Updating system packages", ("apt-get", "update", "-qq")),
        InstallStep(
            "Upgrading system packages",
            ("apt-get", "upgrade", "-y", "-qq",
             "-o", "Dpkg::Options::=--force-confdef",
             "-o", "Dpkg::Options::=--force-confold"),
            required=False,
        ),
        InstallStep(
            "Removing any old Docker versions",
            ("apt-get", "remove", "-y", "docker", "docker-engine", "docker.io",
             "containerd", "runc"),
            required=False,
        ),
        InstallStep(
            "Installing prerequisites",
            ("apt-get", "install", "-y", "-qq", "ca-certificates", "curl", "gnupg",
             "lsb-release"),
        ),
        InstallStep(
            "Adding Docker GPG key",
            _sh("mkdir -p /etc/apt/keyrings && "
                "curl -fsSL https://download.docker.com/linux/ubuntu/gpg | "
                "gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg"),
        ),
        InstallStep(
            "Setting up Docker repository",
            _sh('echo "deb [arch=$(dpkg --print-architecture) '
                'signed-by=/etc/apt/keyrings/docker.gpg] '
                'https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable" '
                "> /etc/apt/sources.list.d/docker.list"),
        ),
        InstallStep("Refreshing package index", ("apt-get", "update", "-qq")),
        InstallStep(
            "Installing Docker Engine",
            ("apt-get", "install", "-y", "-qq", "docker-ce", "docker-ce-cli",
             "containerd.io", "docker-buildx-plugin", "docker-compose-plugin"),
        ),
        InstallStep("Starting Docker service", ("systemctl", "start", "docker")),
        InstallStep("Enabling Docker service", ("systemctl", "enable", "docker")),
        InstallStep(
            "Installing Docker Compose (standalone)",
            _sh("curl -fsSL https://github.com/docker/compose/releases/download/"
                f"{COMPOSE_VERSION}/docker-compose-linux-$(uname -m) "
                "-o /usr/local/bin/docker-compose && "
                "chmod +x /usr/local/bin/docker-compose"),
        ),
        InstallStep(
            "Adding NVIDIA Container Toolkit repository",
            _sh("curl -fsSL https://nvidia.github.io/libnvidia-container/gpgkey | "
                "gpg --dearmor --yes -o "
                "/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg && "
                "curl -fsSL https://nvidia.github.io/libnvidia-container/stable/deb/"
                "nvidia-container-toolkit.list | "
                "sed 's#deb https://#deb [signed-by=/usr/share/keyrings/"
                "nvidia-container-toolkit-keyring.gpg] https://#g' "
                "> /etc/apt/sources.list.d/nvidia-container-toolkit.list"),
        ),
        InstallStep("Refreshing package index", ("apt-get", "update", "-qq")),
        InstallStep(
            "Installing NVIDIA Container Toolkit",
            ("apt-get", "install", "-y", "-qq", "nvidia-container-toolkit"),
        ),
        InstallStep(
            "Configuring Docker for NVIDIA GPU support",
            ("nvidia-ctk", "runtime", "configure", "--runtime=docker"),
        ),
        InstallStep("Restarting Docker", ("systemctl", "restart", "docker")),
    ]


def resolve_public_address(timeout: float = 3.0) -> str:
    """Ask the Linode Metadata Service for this node's public IPv4."""
    try:
        token_resp = requests.put(
            f"{METADATA_URL}/token",
            headers={"Metadata-Token-Expiry-Seconds": "300"},
            timeout=timeout,
        )
        token_resp.raise_for_status()
        resp = requests.get(
            f"{METADATA_URL}/network",
            headers={"Metadata-Token": token_resp.text.strip(), "Accept": "application/json"},
            timeout=timeout,
        )
        resp.raise_for_status()
        public = resp.json().get("ipv4", {}).get("public", [])
        if public:
            return public[0].split("/")[0]
    except Exception as e:
        logger.debug("Metadata service lookup failed: %s", e)
    return ADDRESS_FALLBACK


class Bootstrap:
    """Runs the bootstrap phases once, in order."""

    def __init__(
        self,
        config: BootstrapConfig,
        executor: CommandExecutor | None = None,
        *,
        reporter: StatusReporter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        address_resolver: Callable[[], str] = resolve_public_address,
    ):
        self.config = config
        self.executor = executor or SubprocessExecutor({"DEBIAN_FRONTEND": "noninteractive"})
        self.reporter = reporter or StatusReporter(
            config.status_file,
            log_dir=config.log_dir,
            compose_file=config.compose_file,
        )
        self.sleep = sleep
        self.address_resolver = address_resolver

    def phases(self) -> list[tuple[DeploymentPhase, Callable[[DeploymentState], None]]]:
        return [
            (DeploymentPhase.INITIALIZING, self.create_directories),
            (DeploymentPhase.DEPENDENCIES_INSTALLING, self.install_dependencies),
            (DeploymentPhase.GPU_CONFIGURING, self.configure_gpu),
            (DeploymentPhase.MANIFEST_GENERATED, self.generate_manifest),
            (DeploymentPhase.CORE_STARTING, self.start_core_service),
            (DeploymentPhase.CORE_LISTENING, self.await_core_listening),
            (DeploymentPhase.DEPENDENT_STARTING, self.start_dependent_service),
            (DeploymentPhase.PERSISTENCE_VALIDATED, self.validate_persistence),
            (DeploymentPhase.CORE_HEALTHY, self.check_health),
            (DeploymentPhase.API_VALIDATED, self.validate_api_contract),
        ]

    def run(self) -> DeploymentState:
        state = DeploymentState(model_id=self.config.model_id)
        logger.info("Starting AI Sandbox deployment...")
        logger.info("Model ID: %s", self.config.model_id)

        try:
            for phase, step in self.phases():
                state.advance(phase)
                step(state)
            state.advance(DeploymentPhase.COMPLETE)
        except BootstrapError as e:
            logger.error("ERROR: %s", e)
            state.fail(e.cause, e.phase)
        except Exception as e:
            logger.exception("Unexpected failure during %s", state.phase.label)
            state.fail(str(e) or type(e).__name__)

        self.report(state)
        return state

    # -- phases ------------------------------------------------------------

    def create_directories(self, state: DeploymentState) -> None:
        logger.info("Creating required directories...")
        for directory in self.config.directories:
            try:
                Path(directory).mkdir(parents=True, exist_ok=True)
                os.chmod(directory, self.config.dir_mode)
            except OSError as e:
                raise BootstrapError(
                    DeploymentPhase.INITIALIZING,
                    f"Failed to create directory: {directory} ({e})",
                ) from e
            logger.info("Created directory: %s", directory)

    def install_dependencies(self, state: DeploymentState) -> None:
        logger.info("Installing Docker and dependencies...")
        for step in dependency_steps():
            logger.info("%s...", step.description)
            result = self.executor.run(step.args, timeout=step.timeout)
            if step.required:
                result.check(DeploymentPhase.DEPENDENCIES_INSTALLING, step.description)
            elif not result.ok:
                logger.debug("%s failed (ignored): %s", step.description, result.stderr.strip())

        logger.info("NVIDIA Container Toolkit installed")
        logger.info("Verifying Docker installation...")
        if self.executor.run(["docker", "run", "--rm", "hello-world"], timeout=300).ok:
            logger.info("Docker is working")
        else:
            logger.warning("Docker test failed (but continuing)")
            state.caveat("Docker hello-world smoke test failed")

    def configure_gpu(self, state: DeploymentState) -> None:
        report = ensure_nvidia_drivers(self.executor, sleep=self.sleep)
        if report.degraded:
            state.caveat(report.message)

    def generate_manifest(self, state: DeploymentState) -> None:
        logger.info("Generating %s...", COMPOSE_FILENAME)
        try:
            generate_manifest(self.config.model_id, self.config.compose_dir)
        except OSError as e:
            raise BootstrapError(
                DeploymentPhase.MANIFEST_GENERATED,
                f"Failed to write {self.config.compose_file}: {e}",
            ) from e

    def start_core_service(self, state: DeploymentState) -> None:
        logger.info("Starting API service...")
        self._compose_up("api").check(DeploymentPhase.CORE_STARTING, "Failed to start API service")
        logger.info("API service started successfully")

    def await_core_listening(self, state: DeploymentState) -> None:
        logger.info("Waiting for API service to be ready...")
        s = self.config.settings
        result = wait_for_port(
            "localhost",
            CORE_PORT,
            interval=s.core_listen_interval,
            max_attempts=s.core_listen_attempts,
            sleep=self.sleep,
            target="API port",
        )
        state.health["core_listening"] = result
        if result.ready:
            logger.info("API service is listening on port %d", CORE_PORT)
        else:
            logger.warning("API service may not be fully ready, but starting UI anyway")
            logger.warning("  API will continue loading in the background")
            state.caveat(
                f"API port {CORE_PORT} was not listening after {result.attempts} attempts; "
                "UI was started anyway"
            )

    def start_dependent_service(self, state: DeploymentState) -> None:
        logger.info("Starting UI service...")
        self._compose_up("ui").check(DeploymentPhase.DEPENDENT_STARTING, "Failed to start UI service")
        logger.info("UI service started successfully")
        logger.info("Waiting for UI service to initialize...")
        self.sleep(self.config.ui_settle_seconds)

    def validate_persistence(self, state: DeploymentState) -> None:
        logger.info("Validating chat history persistence...")
        data_dir = Path(self.config.data_dir)
        if not data_dir.is_dir():
            raise BootstrapError(
                DeploymentPhase.PERSISTENCE_VALIDATED,
                f"Chat history directory {data_dir} does not exist",
            )
        probe = data_dir / ".write-test"
        try:
            probe.touch()
            probe.unlink()
        except OSError as e:
            raise BootstrapError(
                DeploymentPhase.PERSISTENCE_VALIDATED,
                f"Chat history directory {data_dir} is not writable",
            ) from e
        logger.info("Chat history directory is writable")

    def check_health(self, state: DeploymentState) -> None:
        s = self.config.settings

        logger.info("Checking Open WebUI health (port %d)...", UI_PORT)
        ui = wait_for_http(
            f"http://localhost:{UI_PORT}",
            interval=s.ui_health_interval,
            max_attempts=s.ui_health_attempts,
            expected_statuses=UI_READY_STATUSES,
            sleep=self.sleep,
            target="Open WebUI",
        )
        state.health["ui"] = ui
        if not ui.ready:
            logger.warning("Open WebUI health check timed out (may still be starting)")
            state.caveat("Open WebUI health check timed out; it may take additional time to start")

        logger.info("Checking vLLM API health (port %d)...", CORE_PORT)
        core = poll(
            "vLLM API",
            core_health_probe(f"http://localhost:{CORE_PORT}"),
            interval=s.core_health_interval,
            max_attempts=s.core_health_attempts,
            timeout=min(5.0, s.core_health_interval * 0.8),
            sleep=self.sleep,
        )
        state.health["core"] = core
        if core.ready:
            return
        if self.config.require_core_health:
            raise BootstrapError(
                DeploymentPhase.CORE_HEALTHY,
                f"vLLM API did not become healthy after {core.attempts} attempts",
            )
        logger.warning("vLLM API health check timed out (model may still be loading)")
        logger.warning(
            "  Large models can take 2-5 minutes to load. Check logs: "
            "docker-compose -f %s logs api", self.config.compose_file,
        )
        state.caveat("vLLM API health check timed out; the model may still be loading")

    def validate_api_contract(self, state: DeploymentState) -> None:
        logger.info("Validating OpenAI API v1 compatibility...")
        self.sleep(self.config.api_warmup_seconds)
        contract = check_api_contract(f"http://localhost:{CORE_PORT}", self.config.model_id)
        if not contract.ok:
            logger.warning(contract.message)
            state.caveat(contract.message)

    # -- reporting ---------------------------------------------------------

    def report(self, state: DeploymentState) -> None:
        try:
            if state.succeeded:
                address = self.config.public_address or self.address_resolver()
                access = AccessInfo(
                    address=address,
                    model_id=self.config.model_id,
                    model_cache=self.config.model_dir,
                    chat_history=self.config.data_dir,
                )
                self.reporter.report_success(access, state.caveats)
                logger.info("Deployment completed successfully!")
                logger.info("Services are available at:")
                logger.info("  - Chat UI: %s", access.ui_url)
                logger.info("  - API: %s", access.api_url)
                if state.caveats:
                    logger.info(
                        "Note: some services may still be initializing. Check: "
                        "docker-compose -f %s ps", self.config.compose_file,
                    )
            else:
                self.reporter.report_error(state.failed_phase, state.failure_cause or "unknown error")
        except OSError as e:
            logger.error("Could not write status file %s: %s", self.reporter.path, e)

    def _compose_up(self, service: str):
        return self.executor.run(
            ["docker-compose", "-f", self.config.compose_file, "up", "-d", service],
            timeout=1800,
        )


def configure_node_logging(log_dir: str, level: int = logging.INFO) -> None:
    """Log to stderr and to ``<log_dir>/deployment.log``."""
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", "%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    root.setLevel(level)
    file_handler = logging.FileHandler(Path(log_dir) / "deployment.log")
    file_handler.setFormatter(fmt)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)


def run_bootstrap(
    config: BootstrapConfig,
    executor: CommandExecutor | None = None,
    **kwargs,
) -> DeploymentState:
    return Bootstrap(config, executor, **kwargs).run()
