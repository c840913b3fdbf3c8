"""NVIDIA GPU detection and driver installation on the node.

Nothing here aborts a deployment: a machine without a GPU, or with a driver
that refuses to load, still gets its services started.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from aisandbox.executor import CommandExecutor

logger = logging.getLogger(__name__)

DRIVER_PACKAGES = ("nvidia-driver-535", "nvidia-utils-535")


class GpuStatus(enum.Enum):
    READY = "ready"  # driver already responding
    INSTALLED = "installed"  # driver installed during this run
    ABSENT = "absent"  # no NVIDIA hardware on the bus
    DRIVER_FAILED = "driver_failed"  # hardware present, driver not responding


@dataclass
class GpuReport:
    status: GpuStatus
    gpus: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def degraded(self) -> bool:
        return self.status in (GpuStatus.ABSENT, GpuStatus.DRIVER_FAILED)


def driver_responding(executor: CommandExecutor) -> bool:
    return executor.run(["nvidia-smi"], timeout=30).ok


def list_gpus(executor: CommandExecutor) -> list[str]:
    """Return ``"<name>, <driver version>"`` per GPU, as reported by nvidia-smi."""
    result = executor.run(
        ["nvidia-smi", "--query-gpu=name,driver_version", "--format=csv,noheader"],
        timeout=30,
    )
    if not result.ok:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def nvidia_hardware_present(executor: CommandExecutor) -> bool:
    """Look for an NVIDIA device on the PCI bus."""
    result = executor.run(["lspci"], timeout=30)
    return result.ok and "nvidia" in result.stdout.lower()


def install_drivers(executor: CommandExecutor) -> bool:
    """Install the distro driver packages, falling back to ubuntu-drivers."""
    executor.run(["apt-get", "update", "-qq"], timeout=600)
    logger.info("Installing NVIDIA drivers (this may take 2-3 minutes)...")
    result = executor.run(
        ["apt-get", "install", "-y", "-qq", *DRIVER_PACKAGES], timeout=1800
    )
    if result.ok:
        logger.info("NVIDIA drivers installed successfully")
        return True

    logger.warning("Failed to install NVIDIA drivers via apt, trying ubuntu-drivers")
    fallback = executor.run(["ubuntu-drivers", "autoinstall"], timeout=1800)
    if not fallback.ok:
        logger.warning("ubuntu-drivers autoinstall failed: %s", fallback.stderr.strip())
    return fallback.ok


def ensure_nvidia_drivers(
    executor: CommandExecutor,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> GpuReport:
    """Make sure a working NVIDIA driver is loaded, if there is a GPU at all."""
    logger.info("Checking NVIDIA drivers...")

    if driver_responding(executor):
        gpus = list_gpus(executor)
        logger.info("NVIDIA drivers already installed")
        for gpu in gpus:
            logger.info("  GPU: %s", gpu)
        return GpuReport(GpuStatus.READY, gpus=gpus)

    if not nvidia_hardware_present(executor):
        msg = (
            "No NVIDIA GPU detected - this may not be a GPU instance; "
            "GPU-accelerated inference will not be available"
        )
        logger.warning(msg)
        return GpuReport(GpuStatus.ABSENT, message=msg)

    logger.info("NVIDIA GPU detected but drivers not installed. Installing...")
    install_drivers(executor)

    if driver_responding(executor):
        gpus = list_gpus(executor)
        logger.info("NVIDIA driver installation verified")
        for gpu in gpus:
            logger.info("  GPU: %s", gpu)
        logger.info("Restarting Docker to enable GPU support...")
        executor.run(["systemctl", "restart", "docker"], timeout=120)
        sleep(2)
        return GpuReport(GpuStatus.INSTALLED, gpus=gpus)

    msg = (
        "NVIDIA drivers installed but nvidia-smi not working; a reboot may be "
        "required for drivers to load, services may fail to start"
    )
    logger.warning(msg)
    return GpuReport(GpuStatus.DRIVER_FAILED, message=msg)
