"""Linode compute provider: GPU instances through the Linode API v4."""

from __future__ import annotations

import logging
import os

import requests

from aisandbox.errors import ProvisioningError
from aisandbox.models import InstanceRecord, InstanceSpec, PreflightResult
from aisandbox.providers.base import ComputeProvider
from aisandbox.providers.registry import register

logger = logging.getLogger(__name__)

_API_BASE = "https://api.linode.com/v4"
_TOKEN_HELP = "https://cloud.linode.com/profile/tokens"


def _token() -> str:
    token = os.environ.get("LINODE_TOKEN")
    if not token:
        raise ProvisioningError(
            "LINODE_TOKEN environment variable is not set. "
            f"Create a personal access token at {_TOKEN_HELP}"
        )
    return token


def _headers() -> dict[str, str]:
    return {
        "Authorization": f"Bearer {_token()}",
        "Content-Type": "application/json",
    }


def _api_error(resp: requests.Response) -> str:
    """The provider's own error text, e.g. ``[root_pass] Password does not meet...``."""
    try:
        errors = resp.json().get("errors") or []
    except ValueError:
        errors = []
    reasons = []
    for err in errors:
        reason = err.get("reason", "")
        field = err.get("field")
        reasons.append(f"[{field}] {reason}" if field else reason)
    if reasons:
        return "; ".join(reasons)
    return f"HTTP {resp.status_code}: {resp.text}"


def _public_ipv4(data: dict) -> str | None:
    addresses = data.get("ipv4") or []
    return addresses[0] if addresses else None


class LinodeProvider(ComputeProvider):
    """Create GPU Linodes with cloud-init user data."""

    def name(self) -> str:
        return "linode"

    def preflight(self) -> PreflightResult:
        result = PreflightResult(provider=self.name())
        fix = f"export LINODE_TOKEN=<your-token>  # {_TOKEN_HELP}"

        if not os.environ.get("LINODE_TOKEN"):
            result.add("api_token", False, "LINODE_TOKEN environment variable is not set", fix)
            return result
        result.add("api_token", True, "LINODE_TOKEN is set")

        try:
            resp = requests.get(f"{_API_BASE}/profile", headers=_headers(), timeout=10)
            if resp.status_code == 401:
                result.add("api_token_valid", False,
                           "LINODE_TOKEN is invalid (401 Unauthorized)", fix)
            else:
                resp.raise_for_status()
                result.add("api_token_valid", True, "LINODE_TOKEN is valid")
        except requests.exceptions.ConnectionError:
            result.add("api_token_valid", False, "Could not reach the Linode API (connection error)")
        except Exception as e:
            result.add("api_token_valid", False, f"Linode API check failed: {e}")

        return result

    def create_instance(self, spec: InstanceSpec) -> InstanceRecord:
        payload = {
            "type": spec.type,
            "region": spec.region,
            "image": spec.image,
            "label": spec.label,
            "root_pass": spec.root_pass,
            "booted": True,
            "metadata": {"user_data": spec.user_data},
        }
        if spec.authorized_keys:
            payload["authorized_keys"] = list(spec.authorized_keys)

        logger.info("Creating Linode %s (%s in %s)", spec.label, spec.type, spec.region)
        try:
            resp = requests.post(
                f"{_API_BASE}/linode/instances",
                headers=_headers(),
                json=payload,
                timeout=60,
            )
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Linode API request failed: {e}") from e

        if not resp.ok:
            raise ProvisioningError(_api_error(resp))

        data = resp.json()
        record = InstanceRecord(
            instance_id=str(data["id"]),
            spec=spec,
            instance_ip=_public_ipv4(data),
            created_at=data.get("created") or "",
            status=data.get("status", ""),
        )
        logger.info("Linode %s created (status: %s)", record.instance_id, record.status)
        return record

    def get_instance(self, instance_id: str, spec: InstanceSpec | None = None) -> InstanceRecord:
        try:
            resp = requests.get(
                f"{_API_BASE}/linode/instances/{instance_id}",
                headers=_headers(),
                timeout=30,
            )
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Linode API request failed: {e}") from e

        if not resp.ok:
            raise ProvisioningError(_api_error(resp))

        data = resp.json()
        if spec is None:
            spec = InstanceSpec(
                type=data.get("type", ""),
                region=data.get("region", ""),
                image=data.get("image") or "",
                label=data.get("label", ""),
                root_pass="",
                user_data="",
            )
        return InstanceRecord(
            instance_id=str(data["id"]),
            spec=spec,
            instance_ip=_public_ipv4(data),
            created_at=data.get("created") or "",
            status=data.get("status", ""),
        )

    def delete_instance(self, instance_id: str) -> None:
        logger.info("Deleting Linode %s", instance_id)
        try:
            resp = requests.delete(
                f"{_API_BASE}/linode/instances/{instance_id}",
                headers=_headers(),
                timeout=30,
            )
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Linode API request failed: {e}") from e

        if resp.status_code == 404:
            logger.warning("Linode %s not found, nothing to delete", instance_id)
            return
        if not resp.ok:
            raise ProvisioningError(_api_error(resp))


register("linode", LinodeProvider)
