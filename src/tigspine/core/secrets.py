"""Credential generation for the monitoring stack.

Generated passwords end up in a ``.env`` file that is read by the compose
tool, sourced by shell scripts and interpolated into INI/YAML templates, so
the alphabet is restricted to ``[A-Za-z0-9]``. Characters produced by the
base64 step that break those formats (``=``, ``+``, ``/``) are stripped, and
the draw is repeated with a larger raw buffer whenever stripping leaves the
result short.

Key Concepts:
    generate_secret: ``generate(minLength) -> str``. Always drawn from the
        operating system CSPRNG via :func:`secrets.token_bytes`; there is no
        fallback to :mod:`random`.
    Character classes: generated secrets of ``MIN_SECRET_LENGTH`` or more
        characters contain at least one upper case letter, one lower case
        letter and one digit; a draw that misses one is redrawn, never
        reported as an error. Caller-supplied secrets are only held to the
        length floor.
    mask_secret: the only form in which a secret reaches the log.

Related Modules:
    - :mod:`tigspine.provision.config` — calls ``generate_secret`` for unset passwords
    - :mod:`tigspine.core.logging` — redacts secrets with ``mask_secret``

Tags:
    secrets, password, csprng, redaction
"""

from __future__ import annotations

import base64
import math
from secrets import token_bytes

from tigspine.core.errors import SecretGenerationError

#: Minimum length for any password accepted or generated.
MIN_SECRET_LENGTH = 12

#: Length used for generated passwords.
DEFAULT_SECRET_LENGTH = 16

MASK_PREFIX = "[SECURED - "

_UNSAFE = str.maketrans("", "", "=+/\n")


def _has_required_classes(value: str) -> bool:
    return (
        any(c.isupper() for c in value)
        and any(c.islower() for c in value)
        and any(c.isdigit() for c in value)
    )


def generate_secret(min_length: int = DEFAULT_SECRET_LENGTH) -> str:
    """Return a fresh random secret of exactly ``min_length`` characters.

    Secrets of at least ``MIN_SECRET_LENGTH`` characters also carry the
    required character classes; a draw that misses them is redrawn.

    Raises:
        ValueError: ``min_length`` is not positive.
        SecretGenerationError: the OS random source failed.
    """
    if min_length < 1:
        raise ValueError(f"min_length must be positive, got {min_length}")

    # 3 raw bytes encode to 4 characters; pad for the stripped ones.
    raw_length = math.ceil(min_length * 3 / 4) + 8
    enforce_classes = min_length >= MIN_SECRET_LENGTH

    while True:
        try:
            raw = token_bytes(raw_length)
        except (OSError, NotImplementedError) as exc:
            raise SecretGenerationError(
                "Secure random source is unavailable", cause=exc
            ) from exc

        text = base64.b64encode(raw).decode("ascii").translate(_UNSAFE)
        if len(text) < min_length:
            raw_length *= 2
            continue
        candidate = text[:min_length]
        if enforce_classes and not _has_required_classes(candidate):
            continue
        return candidate


def secret_problems(value: str, min_length: int = MIN_SECRET_LENGTH) -> list[str]:
    """Validate a caller-supplied secret. Returns a list of problems, empty if ok."""
    problems = []
    if len(value) < min_length:
        problems.append(f"must be at least {min_length} characters (got {len(value)})")
    if "\n" in value or "\r" in value:
        problems.append("must not contain line breaks")
    return problems


def mask_secret(value: str | None) -> str:
    """Render a secret the only way it may be logged."""
    length = len(value) if value else 0
    return f"{MASK_PREFIX}{length} characters]"


__all__ = [
    "MIN_SECRET_LENGTH",
    "DEFAULT_SECRET_LENGTH",
    "MASK_PREFIX",
    "generate_secret",
    "secret_problems",
    "mask_secret",
]
