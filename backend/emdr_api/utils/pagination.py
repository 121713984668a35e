"""Defensive parsing of `limit`/`offset` query parameters."""

from typing import Optional


def parse_non_negative_int(raw: Optional[str], default: int) -> int:
    """Return `raw` as a non-negative int, or `default` for anything else.

    Missing, negative, fractional and non-numeric values all fall back to
    the default; this never raises.
    """
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    if value < 0:
        return default
    return value


def parse_page(limit: Optional[str], offset: Optional[str], default_limit: int = 20) -> tuple[int, int]:
    return parse_non_negative_int(limit, default_limit), parse_non_negative_int(offset, 0)


def split_csv(raw: Optional[str]) -> list[str]:
    """Split a comma-separated filter value, dropping empty items."""
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]
