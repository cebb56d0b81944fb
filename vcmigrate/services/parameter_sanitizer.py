"""Redaction of sensitive script parameters before they reach any log."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import SecretStr

from ..core.config import settings

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

SENSITIVE_NAME_FRAGMENTS = ("password", "pwd", "secret", "token", "key", "credential")

_UNPRINTABLE_NAME = "<unprintable>"


def is_sensitive_parameter(name: Any) -> bool:
    """Return True when a parameter name looks like it carries a secret."""

    try:
        lowered = str(name).lower()
    except Exception:  # unrenderable names are treated as sensitive
        return True
    return any(fragment in lowered for fragment in SENSITIVE_NAME_FRAGMENTS)


def _render_name(name: Any) -> str:
    try:
        return str(name)
    except Exception:
        return _UNPRINTABLE_NAME


def _render_value(value: Any, max_length: int) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    try:
        text = str(value)
    except Exception:
        return ""
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def sanitize_mapping(
    parameters: Optional[Mapping[Any, Any]],
    *,
    max_length: Optional[int] = None,
) -> Dict[str, str]:
    """Return a name→display-value mapping with secrets replaced.

    Names are kept whole; only values are truncated.
    """

    if not parameters:
        return {}

    limit = settings.parameter_log_max_length if max_length is None else max_length
    limit = max(0, limit)

    sanitized: Dict[str, str] = {}
    try:
        items = list(parameters.items())
    except Exception:
        logger.debug("Unable to enumerate parameters for sanitizing", exc_info=True)
        return {}

    for name, value in items:
        key = _render_name(name)
        if isinstance(value, SecretStr) or is_sensitive_parameter(name):
            sanitized[key] = REDACTED
        else:
            sanitized[key] = _render_value(value, limit)
    return sanitized


def sanitize_parameters(
    parameters: Optional[Mapping[Any, Any]],
    *,
    max_length: Optional[int] = None,
) -> str:
    """Render parameters as ``Name=value`` pairs safe for logging.

    Values of parameters whose names contain ``password``, ``pwd``,
    ``secret``, ``token``, ``key`` or ``credential`` (any case) are replaced
    with ``[REDACTED]``. Everything else is rendered verbatim and truncated
    to ``max_length`` characters. The function is pure and never raises.
    """

    pairs = sanitize_mapping(parameters, max_length=max_length)
    return ", ".join(f"{name}={value}" for name, value in pairs.items())


def secret_values(
    parameters: Optional[Mapping[Any, Any]] = None,
    extra: Iterable[Any] = (),
) -> List[str]:
    """Collect the literal secrets carried by ``parameters`` and ``extra``.

    A secret is the value of any ``SecretStr`` or of any parameter with a
    sensitive name. Each one is returned both as-is and in the quote-doubled
    form it takes inside a PowerShell literal, longest first.
    """

    candidates: List[Any] = list(extra)
    try:
        items = list((parameters or {}).items())
    except Exception:
        logger.debug("Unable to enumerate parameters for secret collection", exc_info=True)
        items = []
    for name, value in items:
        if isinstance(value, SecretStr) or is_sensitive_parameter(name):
            candidates.append(value)

    found = set()
    for candidate in candidates:
        if candidate is None or isinstance(candidate, (bool, int, float)):
            continue
        if isinstance(candidate, SecretStr):
            candidate = candidate.get_secret_value()
        try:
            text = str(candidate)
        except Exception:
            continue
        if not text.strip():
            continue
        found.add(text)
        found.add(text.replace("'", "''"))
    return sorted(found, key=len, reverse=True)


def redact_text(text: Optional[str], secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret in ``text`` with ``[REDACTED]``."""

    if not text:
        return text or ""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text
