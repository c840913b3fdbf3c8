"""Root password generation, SSH key discovery and instance labels."""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ROOT_PASS_MIN = 11
ROOT_PASS_MAX = 128
PASSWORD_SYMBOLS = "!@#$%^&*"
PASSWORD_LENGTH = 32
MIN_PER_CLASS = 3

_CLASSES = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
    PASSWORD_SYMBOLS,
)

# Preference order when picking a key to install on the node.
_PUBLIC_KEY_NAMES = ("id_ed25519.pub", "id_ecdsa.pub", "id_rsa.pub")


def generate_root_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password with at least three characters from each class."""
    floor = MIN_PER_CLASS * len(_CLASSES)
    if length < max(floor, ROOT_PASS_MIN) or length > ROOT_PASS_MAX:
        raise ValueError(
            f"Password length must be between {max(floor, ROOT_PASS_MIN)} "
            f"and {ROOT_PASS_MAX}, got {length}"
        )

    rng = secrets.SystemRandom()
    chars = [secrets.choice(cls) for cls in _CLASSES for _ in range(MIN_PER_CLASS)]
    alphabet = "".join(_CLASSES)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    rng.shuffle(chars)
    return "".join(chars)


def validate_root_password(password: str) -> None:
    """Reject passwords the provider would refuse, before anything is created."""
    if not ROOT_PASS_MIN <= len(password) <= ROOT_PASS_MAX:
        raise ValueError(
            f"Root password must be {ROOT_PASS_MIN}-{ROOT_PASS_MAX} characters long "
            f"(got {len(password)})"
        )


def find_public_key(explicit: Optional[str] = None, ssh_dir: Optional[Path] = None) -> Optional[str]:
    """Return the contents of the SSH public key to authorize on the node.

    An explicit path must exist. Otherwise the first key found under
    ``~/.ssh`` is used, or ``None`` when there is none.
    """
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise FileNotFoundError(f"SSH public key not found: {path}")
        return path.read_text().strip()

    ssh_dir = ssh_dir or Path.home() / ".ssh"
    for name in _PUBLIC_KEY_NAMES:
        path = ssh_dir / name
        if path.is_file():
            logger.info("Using SSH public key %s", path)
            return path.read_text().strip()
    logger.debug("No SSH public key found in %s", ssh_dir)
    return None


def default_label(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"ai-sandbox-{now:%Y%m%d-%H%M%S}"
