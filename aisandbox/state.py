"""Local deployment records: one JSON file per instance."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from aisandbox.models import InstanceRecord

logger = logging.getLogger(__name__)


@dataclass
class DeploymentRecord:
    """Read-side representation of a persisted instance."""

    instance_id: str
    instance_ip: Optional[str] = None
    instance_type: str = ""
    region: str = ""
    label: str = ""
    root_password: str = ""
    created_at: str = ""
    model_id: str = ""

    @classmethod
    def from_instance(cls, record: InstanceRecord, model_id: str = "") -> "DeploymentRecord":
        return cls(
            instance_id=record.instance_id,
            instance_ip=record.instance_ip,
            instance_type=record.spec.type,
            region=record.spec.region,
            label=record.spec.label,
            root_password=record.spec.root_pass,
            created_at=record.created_at,
            model_id=model_id,
        )


def _state_dir() -> Path:
    """Return the state directory, respecting AI_SANDBOX_STATE_DIR."""
    env = os.environ.get("AI_SANDBOX_STATE_DIR")
    if env:
        return Path(env)
    return Path.home() / ".ai-sandbox"


def _records_dir(state_dir: Path | str | None = None) -> Path:
    return Path(state_dir) if state_dir else _state_dir() / "instances"


def record_path(instance_id: str, *, state_dir=None) -> Path:
    return _records_dir(state_dir) / f"{instance_id}.json"


def save_record(record: DeploymentRecord, *, state_dir=None) -> Path:
    """Write the record; the file holds the root password, so it is 0600."""
    path = record_path(record.instance_id, state_dir=state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "instance_id": record.instance_id,
        "instance_ip": record.instance_ip,
        "instance_type": record.instance_type,
        "region": record.region,
        "label": record.label,
        "root_password": record.root_password,
        "created_at": record.created_at,
        "model_id": record.model_id,
    }
    # Mode is set at creation, not after the write.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(json.dumps(data, indent=2))
    # O_CREAT leaves the mode of an existing file alone.
    os.chmod(path, 0o600)
    logger.debug("Saved deployment record %s", path)
    return path


def load_record(instance_id: str, *, state_dir=None) -> DeploymentRecord | None:
    path = record_path(instance_id, state_dir=state_dir)
    if not path.is_file():
        return None
    return _parse(path)


def update_record_ip(instance_id: str, instance_ip: str, *, state_dir=None) -> None:
    record = load_record(instance_id, state_dir=state_dir)
    if record is None:
        return
    record.instance_ip = instance_ip
    save_record(record, state_dir=state_dir)


def delete_record(instance_id: str, *, state_dir=None) -> bool:
    """Remove the record. Returns False if there was nothing to remove."""
    path = record_path(instance_id, state_dir=state_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def list_records(*, state_dir=None) -> list[DeploymentRecord]:
    """All records, newest first."""
    directory = _records_dir(state_dir)
    if not directory.is_dir():
        return []
    records = []
    for path in directory.glob("*.json"):
        try:
            records.append(_parse(path))
        except (ValueError, TypeError) as e:
            logger.warning("Skipping unreadable record %s: %s", path, e)
    return sorted(records, key=lambda r: r.created_at, reverse=True)


def _parse(path: Path) -> DeploymentRecord:
    data = json.loads(path.read_text())
    known = DeploymentRecord.__dataclass_fields__
    return DeploymentRecord(**{k: v for k, v in data.items() if k in known})
