"""Query parameter parsing shared by the ASGI and WSGI surfaces."""

import math

from alertpipe.core.models import AlertState

VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

VALID_STATES = {AlertState.PENDING.value, AlertState.FIRING.value}


def _parse_since_param(params: dict[str, list[str]]) -> float:
    """Parse and validate the 'since' query parameter.

    Args:
        params: Parsed query string parameters (as returned by urllib.parse.parse_qs).

    Returns:
        Timestamp as float, defaulting to 0.0 if invalid or missing.
        Negative, NaN and infinite values also yield 0.0.
    """
    try:
        value = float(params.get("since", ["0"])[0])
    except ValueError:
        return 0.0
    if value < 0 or not math.isfinite(value):
        return 0.0
    return value


def _parse_level_param(params: dict[str, list[str]]) -> str | None:
    """Parse and validate the 'level' query parameter.

    Returns:
        Validated level string (uppercase) or None if invalid/missing.
    """
    level_list = params.get("level", [None])
    level_raw = level_list[0] if level_list else None
    if level_raw and level_raw.upper() in VALID_LEVELS:
        return level_raw.upper()
    return None


def _parse_state_param(params: dict[str, list[str]]) -> str | None:
    """Parse the 'state' filter of /alerts ("pending" or "firing")."""
    state_list = params.get("state", [None])
    state_raw = state_list[0] if state_list else None
    if state_raw and state_raw.lower() in VALID_STATES:
        return state_raw.lower()
    return None
