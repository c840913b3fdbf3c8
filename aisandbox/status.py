"""Terminal status surface: the node's /etc/motd.

The file is overwritten on every report so only the latest outcome is
visible. Operators and the validation step read it to learn how the
bootstrap ended.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from aisandbox.manifest import CORE_PORT, UI_PORT
from aisandbox.models import Caveat
from aisandbox.template_engine import render_template

logger = logging.getLogger(__name__)

DEFAULT_STATUS_FILE = "/etc/motd"


@dataclass
class AccessInfo:
    address: str
    model_id: str
    model_cache: str = "/opt/models"
    chat_history: str = "/opt/open-webui"

    @property
    def ui_url(self) -> str:
        return f"http://{self.address}:{UI_PORT}"

    @property
    def api_url(self) -> str:
        return f"http://{self.address}:{CORE_PORT}/v1"


def _notes_block(caveats: Iterable[Caveat]) -> str:
    caveats = list(caveats)
    if not caveats:
        return ""
    lines = ["", "📝 Notes:"]
    for c in caveats:
        lines.append(f"   • [{c.phase.label}] {c.message}")
    return "\n".join(lines) + "\n"


class StatusReporter:
    """Writes success or error blocks to the status file."""

    def __init__(
        self,
        path: Path | str = DEFAULT_STATUS_FILE,
        *,
        log_dir: str = "/var/log/ai-sandbox",
        compose_file: str = "/opt/ai-sandbox/docker-compose.yml",
    ):
        self.path = Path(path)
        self.log_dir = log_dir
        self.compose_file = compose_file

    def render_success(self, access: AccessInfo, caveats: Iterable[Caveat] = ()) -> str:
        return render_template(
            "motd_success.txt",
            {
                "ui_url": access.ui_url,
                "api_url": access.api_url,
                "ui_port": str(UI_PORT),
                "api_port": str(CORE_PORT),
                "log_dir": self.log_dir,
                "compose_file": self.compose_file,
                "model_id": access.model_id,
                "model_cache": access.model_cache,
                "chat_history": access.chat_history,
                "notes": _notes_block(caveats),
            },
        )

    def render_error(self, phase, cause: str) -> str:
        return render_template(
            "motd_error.txt",
            {
                "phase": getattr(phase, "label", str(phase)),
                "cause": cause,
                "log_dir": self.log_dir,
            },
        )

    def report_success(self, access: AccessInfo, caveats: Iterable[Caveat] = ()) -> None:
        self._write(self.render_success(access, caveats))
        logger.info("Wrote success status to %s", self.path)

    def report_error(self, phase, cause: str) -> None:
        self._write(self.render_error(phase, cause))
        logger.info("Wrote error status to %s", self.path)

    def _write(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(text)
