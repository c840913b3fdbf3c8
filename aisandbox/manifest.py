"""Service manifest (docker-compose.yml) generation."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from aisandbox.models import ServiceDescriptor
from aisandbox.template_engine import MODEL_ID_PLACEHOLDER, substitute_token

logger = logging.getLogger(__name__)

COMPOSE_FILENAME = "docker-compose.yml"
TEMPLATE_FILENAME = "docker-compose.yml.template"
NETWORK_NAME = "ai-sandbox-network"

CORE_PORT = 8000
UI_PORT = 3000
UI_INTERNAL_PORT = 8080

# Compose-level healthcheck; /v1/models only answers once the model is loaded.
_COMPOSE_HEALTHCHECK = {
    "test": ["CMD", "curl", "-f", "-s", f"http://localhost:{CORE_PORT}/v1/models"],
    "interval": "10s",
    "timeout": "5s",
    "retries": 5,
    "start_period": "180s",
}


def core_service(model_id: str) -> ServiceDescriptor:
    """The vLLM inference service."""
    return ServiceDescriptor(
        name="api",
        image="vllm/vllm-openai:latest",
        container_name="ai-sandbox-api",
        exposed_port=CORE_PORT,
        internal_port=CORE_PORT,
        health_probe="/health",
        command=(
            "--model", model_id,
            "--max-model-len", "16384",
            "--gpu-memory-utilization", "0.95",
        ),
        volumes=("/opt/models:/root/.cache/huggingface",),
        gpu=True,
    )


def dependent_service() -> ServiceDescriptor:
    """The Open WebUI front-end. Starts once the core container has started."""
    return ServiceDescriptor(
        name="ui",
        image="ghcr.io/open-webui/open-webui:main",
        container_name="ai-sandbox-ui",
        exposed_port=UI_PORT,
        internal_port=UI_INTERNAL_PORT,
        health_probe="/",
        depends_on="api",
        volumes=("/opt/open-webui:/app/backend/data",),
        environment=(f"OPENAI_API_BASE_URL=http://api:{CORE_PORT}/v1",),
    )


def _service_block(svc: ServiceDescriptor) -> dict:
    block: dict = {"image": svc.image}
    if svc.container_name:
        block["container_name"] = svc.container_name
    if svc.command:
        block["command"] = list(svc.command)
    block["ports"] = [f"{svc.exposed_port}:{svc.internal_port}"]
    if svc.volumes:
        block["volumes"] = list(svc.volumes)
    if svc.environment:
        block["environment"] = list(svc.environment)
    if svc.gpu:
        block["healthcheck"] = dict(_COMPOSE_HEALTHCHECK)
        block["deploy"] = {
            "resources": {
                "reservations": {
                    "devices": [
                        {"driver": "nvidia", "count": "all", "capabilities": ["gpu"]},
                    ],
                },
            },
        }
    if svc.depends_on:
        block["depends_on"] = {svc.depends_on: {"condition": "service_started"}}
    block["restart"] = "unless-stopped"
    block["networks"] = [NETWORK_NAME]
    return block


def build_inline_manifest(model_id: str) -> str:
    """Synthesize the compose file directly from the two service descriptors."""
    services = [core_service(model_id), dependent_service()]
    doc = {
        "version": "3.8",
        "services": {svc.name: _service_block(svc) for svc in services},
        "networks": {NETWORK_NAME: {"driver": "bridge"}},
    }
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def render_manifest(template: str, model_id: str) -> str:
    """Substitute the model id into a manifest template, verbatim."""
    return substitute_token(template, MODEL_ID_PLACEHOLDER, model_id)


def generate_manifest(model_id: str, compose_dir: Path | str) -> Path:
    """Write ``docker-compose.yml`` into ``compose_dir`` and return its path.

    Uses ``docker-compose.yml.template`` from the same directory when present,
    otherwise falls back to the inline manifest. Re-running overwrites the
    file with identical content for the same model id.
    """
    compose_dir = Path(compose_dir)
    output = compose_dir / COMPOSE_FILENAME
    template_path = compose_dir / TEMPLATE_FILENAME

    if template_path.is_file():
        logger.info("Using template file: %s", template_path)
        content = render_manifest(template_path.read_text(), model_id)
    else:
        logger.info("Template not found, generating inline %s", COMPOSE_FILENAME)
        content = build_inline_manifest(model_id)

    output.write_text(content)
    logger.info("Docker Compose file generated: %s", output)
    return output
