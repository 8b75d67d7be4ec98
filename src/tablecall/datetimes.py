import logging
import re
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

LOCAL_FORMAT = "%Y-%m-%dT%H:%M:%S"
ZONE_SUFFIX = re.compile(r"(Z|[+-]\d{2}:?\d{2})$", re.IGNORECASE)


def _zone(name: str | None) -> ZoneInfo | None:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r", name)
        return None


def normalize_local_datetime(value: str | None, timezone_name: str | None, fallback_timezone: str = "UTC") -> str | None:
    """Normalize an extracted datetime to a zone-less local wall-clock string.

    "2026-01-27T00:00:00Z" in America/Toronto becomes "2026-01-26T19:00:00".
    Values without a zone suffix are only validated and padded, e.g.
    "2026-01-27T19:00" becomes "2026-01-27T19:00:00". Anything that does not
    parse returns None.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None

    has_zone = "T" in text.upper() and ZONE_SUFFIX.search(text) is not None
    candidate = text[:-1] + "+00:00" if text[-1] in "zZ" else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        logger.warning("Discarding unparsable datetime %r", value)
        return None

    if has_zone and parsed.tzinfo is not None:
        zone = _zone(timezone_name) or _zone(fallback_timezone) or ZoneInfo("UTC")
        parsed = parsed.astimezone(zone)

    return parsed.replace(tzinfo=None, microsecond=0).strftime(LOCAL_FORMAT)
