"""Endpoint validation: health polling and the OpenAI chat-completion contract."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from aisandbox.config import ValidationSettings
from aisandbox.manifest import CORE_PORT, UI_PORT
from aisandbox.models import ValidationReport
from aisandbox.poller import PollTarget, any_probe, http_probe, poll_many

logger = logging.getLogger(__name__)

UI_READY_STATUSES = (200, 301, 302)


@dataclass
class ContractCheck:
    ok: bool
    message: str
    status_code: Optional[int] = None  # None when nothing came back
    body: str = ""

    @property
    def still_loading(self) -> bool:
        return self.status_code in (None, 503)


def _looks_like_chat_completion(data) -> bool:
    if not isinstance(data, dict):
        return False
    if data.get("object") != "chat.completion":
        return False
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return False
    first = choices[0]
    return isinstance(first, dict) and "message" in first


def check_api_contract(
    base_url: str,
    model_id: str,
    *,
    timeout: float = 30.0,
) -> ContractCheck:
    """Send one tiny chat completion and check the response envelope.

    ``base_url`` is the server root, e.g. ``http://localhost:8000``.
    """
    url = f"{base_url.rstrip('/')}/v1/chat/completions"
    payload = {
        "model": model_id,
        "messages": [{"role": "user", "content": "test"}],
        "max_tokens": 5,
    }
    try:
        resp = requests.post(url, json=payload, timeout=timeout)
    except requests.exceptions.RequestException as e:
        logger.debug("Chat completion probe failed: %s", e)
        return ContractCheck(
            ok=False,
            message="API not ready yet (no response) - model may still be loading",
        )

    body = resp.text
    if resp.status_code == 200:
        try:
            data = resp.json()
        except ValueError:
            data = None
        if _looks_like_chat_completion(data):
            logger.info("OpenAI API v1 compatibility validated")
            return ContractCheck(ok=True, message="OpenAI API v1 compatibility validated",
                                 status_code=200, body=body)
        logger.warning("API responded but response format may not match OpenAI v1")
        logger.warning("  Response: %s", body)
        return ContractCheck(
            ok=False,
            message=f"API responded but response format may not match OpenAI v1. Response: {body}",
            status_code=200,
            body=body,
        )

    if resp.status_code == 503:
        return ContractCheck(
            ok=False,
            message="API not ready yet (HTTP 503) - model may still be loading",
            status_code=503,
            body=body,
        )

    logger.warning("API compatibility check returned HTTP %d", resp.status_code)
    logger.warning("  Response: %s", body)
    return ContractCheck(
        ok=False,
        message=f"API compatibility check returned HTTP {resp.status_code}. Response: {body}",
        status_code=resp.status_code,
        body=body,
    )


def core_health_probe(base_url: str):
    """Ready when either /health or /v1/models answers 200."""
    base = base_url.rstrip("/")
    return any_probe(http_probe(f"{base}/health"), http_probe(f"{base}/v1/models"))


def validate_deployment(
    address: str,
    model_id: str,
    settings: ValidationSettings | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ValidationReport:
    """Probe the public UI and API of a freshly provisioned node.

    UI and API are polled concurrently; the contract check runs only once
    the API reports healthy. Nothing here raises for an unhealthy node.
    """
    settings = settings or ValidationSettings()
    api_base = f"http://{address}:{CORE_PORT}"
    ui_url = f"http://{address}:{UI_PORT}"

    logger.info("Validating endpoints on %s", address)
    results = poll_many(
        [
            PollTarget(
                name="ui",
                probe=http_probe(ui_url, expected_statuses=UI_READY_STATUSES),
                interval=settings.ui_interval,
                max_attempts=settings.ui_attempts,
            ),
            PollTarget(
                name="api",
                probe=core_health_probe(api_base),
                interval=settings.api_interval,
                max_attempts=settings.api_attempts,
            ),
        ],
        sleep=sleep,
    )

    report = ValidationReport(ui=results["ui"], api=results["api"])
    if not report.ui.ready:
        report.messages.append(
            f"Chat UI at {ui_url} did not respond after {report.ui.attempts} attempts "
            "(may still be starting)"
        )
    if not report.api.ready:
        report.messages.append(
            f"API at {api_base}/v1 did not become healthy after {report.api.attempts} "
            "attempts (model may still be loading)"
        )
        return report

    contract = check_api_contract(api_base, model_id)
    report.api_contract_ok = contract.ok
    if not contract.ok:
        report.messages.append(contract.message)
    return report
