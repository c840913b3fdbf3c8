"""Orchestrator: creates the node, waits for it, and validates what bootstrap built."""

from __future__ import annotations

import base64
import io
import logging
import tarfile
import time
from pathlib import Path
from typing import Callable

from aisandbox.config import Settings, default_settings
from aisandbox.credentials import (
    default_label,
    find_public_key,
    generate_root_password,
    validate_root_password,
)
from aisandbox.errors import ProvisioningError
from aisandbox.manifest import CORE_PORT, UI_PORT
from aisandbox.models import (
    DeploymentResult,
    InstanceRecord,
    InstanceSpec,
    ProvisionRequest,
)
from aisandbox.poller import check_once, http_probe, poll, tcp_probe, wait_for_port
from aisandbox.providers.base import ComputeProvider
from aisandbox.state import DeploymentRecord, delete_record, save_record, update_record_ip
from aisandbox.template_engine import MODEL_ID_PLACEHOLDER, read_template, substitute_token
from aisandbox.validator import UI_READY_STATUSES, core_health_probe, validate_deployment

logger = logging.getLogger(__name__)

SSH_PORT = 22
BOOTSTRAP_TEMPLATE = "bootstrap.sh.tpl"
PACKAGE_ARCHIVE_PLACEHOLDER = "PACKAGE_ARCHIVE_PLACEHOLDER"

_PACKAGE_DIR = Path(__file__).resolve().parent

# Operator-side files; the node only runs `python3 -m aisandbox bootstrap`.
_OPERATOR_ONLY = frozenset({
    "orchestrator.py", "state.py", "credentials.py", "providers", BOOTSTRAP_TEMPLATE,
})


def _node_files(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
    name = Path(info.name).name
    if name == "__pycache__" or name.endswith(".pyc") or name in _OPERATOR_ONLY:
        return None
    return info


def build_package_archive() -> str:
    """The node-side modules as a base64 tar.gz, unpacked on the node in place of a package index."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        tar.add(_PACKAGE_DIR, arcname=_PACKAGE_DIR.name, filter=_node_files)
    return base64.encodebytes(buf.getvalue()).decode().strip()


def build_user_data(model_id: str) -> str:
    """Bootstrap payload with the runner embedded and the model id substituted, base64-encoded."""
    script = read_template(BOOTSTRAP_TEMPLATE)
    # base64 text has no underscores, so it cannot introduce a model id token.
    script = substitute_token(script, PACKAGE_ARCHIVE_PLACEHOLDER, build_package_archive())
    script = substitute_token(script, MODEL_ID_PLACEHOLDER, model_id)
    user_data = base64.b64encode(script.encode()).decode()
    logger.debug("Bootstrap user data is %d bytes", len(user_data))
    return user_data


def build_instance_spec(request: ProvisionRequest) -> tuple[InstanceSpec, bool]:
    """Fill in generated defaults. Returns the spec and whether the password was generated."""
    generated = request.root_pass is None
    if generated:
        root_pass = generate_root_password()
    else:
        root_pass = request.root_pass
        validate_root_password(root_pass)

    public_key = find_public_key(request.ssh_key_path)
    spec = InstanceSpec(
        type=request.instance_type,
        region=request.region,
        image=request.image,
        label=request.label or default_label(),
        root_pass=root_pass,
        user_data=build_user_data(request.model_id),
        authorized_keys=(public_key,) if public_key else (),
    )
    return spec, generated


def resolve_address(
    provider: ComputeProvider,
    record: InstanceRecord,
    *,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Return the public address, re-querying the provider while it is missing."""
    if record.instance_ip:
        return record.instance_ip

    logger.info("Creation response had no public address; querying provider")
    found: dict[str, str] = {}

    def _probe(_timeout: float) -> bool:
        current = provider.get_instance(record.instance_id, record.spec)
        if current.instance_ip:
            found["ip"] = current.instance_ip
            return True
        return False

    result = poll(
        f"address of instance {record.instance_id}",
        _probe,
        interval=interval,
        max_attempts=attempts,
        sleep=sleep,
    )
    if not result.ready:
        raise ProvisioningError(
            f"Could not resolve a public address for instance {record.instance_id}"
            + (f": {result.detail}" if result.detail and result.detail != "not ready" else "")
        )
    record.instance_ip = found["ip"]
    return record.instance_ip


def provision(
    request: ProvisionRequest,
    *,
    provider: ComputeProvider,
    settings: Settings | None = None,
    sleep: Callable[[float], None] = time.sleep,
    state_dir=None,
) -> DeploymentResult:
    """Create the instance and wait for the stack that bootstrap brings up.

    Failures while creating the instance or resolving its address raise
    :class:`ProvisioningError`. Everything after that only adds caveats.
    """
    settings = settings or default_settings()
    p = settings.provision

    # (a) create
    preflight = provider.preflight()
    if not preflight.ok:
        raise ProvisioningError(f"Preflight failed: {preflight.summary()}")

    try:
        spec, generated = build_instance_spec(request)
    except (ValueError, FileNotFoundError) as e:
        raise ProvisioningError(str(e)) from e

    record = provider.create_instance(spec)

    # (b) persist
    save_record(DeploymentRecord.from_instance(record, request.model_id), state_dir=state_dir)

    # (c) address
    address = resolve_address(
        provider,
        record,
        attempts=p.address_attempts,
        interval=p.address_interval,
        sleep=sleep,
    )
    update_record_ip(record.instance_id, address, state_dir=state_dir)
    logger.info("Instance %s has address %s", record.instance_id, address)

    result = DeploymentResult(
        instance_id=record.instance_id,
        label=spec.label,
        model_id=request.model_id,
        root_pass=spec.root_pass,
        instance_ip=address,
        ui_url=f"http://{address}:{UI_PORT}",
        api_url=f"http://{address}:{CORE_PORT}/v1",
        password_generated=generated,
    )

    # (d) reachability
    logger.info("Waiting for SSH on %s...", address)
    ssh = wait_for_port(
        address,
        SSH_PORT,
        interval=p.ssh_interval,
        max_attempts=p.ssh_attempts,
        sleep=sleep,
        target="SSH",
    )
    if not ssh.ready:
        msg = f"SSH on {address} not reachable after {ssh.attempts} attempts; bootstrap continues on the node"
        logger.warning(msg)
        result.caveats.append(msg)

    # (e) settle
    settle = request.settle_seconds if request.settle_seconds is not None else p.settle_seconds
    if settle > 0:
        logger.info("Waiting %ds for bootstrap to make progress...", settle)
        sleep(settle)

    # (f) validate
    if request.skip_validation:
        logger.info("Skipping endpoint validation")
        return result

    try:
        report = validate_deployment(address, request.model_id, settings.validation, sleep=sleep)
    except Exception as e:
        logger.warning("Validation failed: %s", e)
        result.caveats.append(f"Validation could not run: {e}")
        return result

    result.validation = report
    result.caveats.extend(report.messages)
    return result


def destroy(instance_id: str, *, provider: ComputeProvider, state_dir=None) -> None:
    """Delete the instance and its local record."""
    provider.delete_instance(instance_id)
    if delete_record(instance_id, state_dir=state_dir):
        logger.info("Removed deployment record for %s", instance_id)
    else:
        logger.info("No local record for %s", instance_id)
    logger.info("Destroy complete for %s", instance_id)


def status(instance_id: str, *, provider: ComputeProvider) -> dict:
    """Provider status plus one-shot probes of the public endpoints."""
    record = provider.get_instance(instance_id)
    info = {
        "instance_id": record.instance_id,
        "label": record.spec.label,
        "status": record.status or "unknown",
        "instance_ip": record.instance_ip,
        "ui": None,
        "api": None,
    }
    if not record.instance_ip:
        return info

    ip = record.instance_ip
    checks = {
        "ssh": check_once("ssh", tcp_probe(ip, SSH_PORT)),
        "ui": check_once(
            "ui", http_probe(f"http://{ip}:{UI_PORT}", expected_statuses=UI_READY_STATUSES)
        ),
        "api": check_once("api", core_health_probe(f"http://{ip}:{CORE_PORT}")),
    }
    info["ssh"] = {"status": checks["ssh"].outcome.value}
    info["ui"] = {"url": f"http://{ip}:{UI_PORT}", "status": checks["ui"].outcome.value}
    info["api"] = {"url": f"http://{ip}:{CORE_PORT}/v1", "status": checks["api"].outcome.value}
    return info
