"""Helpers shared by the vault, the lifecycle manager and the generation gateway."""

import base64
import getpass
import platform
import uuid
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import InvalidInput

# Constants
MAX_PROMPT_LENGTH = 2000
KEY_DERIVATION_SALT = b"webgen-session-vault-v1"
KEY_DERIVATION_ITERATIONS = 100_000
MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


def _read_machine_id() -> str:
    for candidate in MACHINE_ID_PATHS:
        try:
            value = Path(candidate).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if value:
            return value
    return ""


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


def machine_material() -> bytes:
    """
    Collect stable identifiers of the local machine and user.

    The same installation always yields the same bytes, so the vault key can be
    re-derived on every start without a separate key file.
    """
    parts = [
        platform.node(),
        format(uuid.getnode(), "x"),
        _current_user(),
        _read_machine_id(),
    ]
    return "|".join(parts).encode("utf-8")


def derive_fernet_key(material: bytes | None = None) -> bytes:
    """
    Derive a Fernet key (url-safe base64, 32 bytes) from machine material.

    Args:
        material: Source bytes. Defaults to machine_material().

    Returns:
        Key suitable for cryptography.fernet.Fernet
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KEY_DERIVATION_SALT,
        iterations=KEY_DERIVATION_ITERATIONS,
    )
    raw = material if material is not None else machine_material()
    return base64.urlsafe_b64encode(kdf.derive(raw))


def validate_prompt(prompt: str, max_length: int = MAX_PROMPT_LENGTH) -> str:
    """
    Validate a generation prompt and return it stripped of outer whitespace.

    Raises:
        InvalidInput: If the prompt is not a string, is blank, or is too long
    """
    if not isinstance(prompt, str):
        raise InvalidInput("Prompt must be a string")
    cleaned = prompt.strip()
    if not cleaned:
        raise InvalidInput("Prompt cannot be empty")
    if len(cleaned) > max_length:
        raise InvalidInput(f"Prompt exceeds maximum length of {max_length} characters")
    return cleaned


def backoff_delay(attempt: int, base: float, cap: float = 300.0) -> float:
    """Exponential backoff for a zero-based attempt number, bounded by cap."""
    return min(cap, base * (2**attempt))
