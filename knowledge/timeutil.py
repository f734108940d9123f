"""Timestamp helpers shared by models, builder and updater."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BeforeValidator

logger = logging.getLogger("lckb.time")


def utc_now() -> datetime:
    """Return UTC datetime for default timestamps."""
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def coerce_timestamp(value: Any) -> datetime | None:
    """Best-effort conversion of chart date values; None when unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds are what browser exports carry.
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_aware(datetime.fromisoformat(text))
        except ValueError:
            pass
    logger.warning("Skipping unparseable timestamp %r", value)
    return None


def _lenient(value: Any) -> Any:
    return coerce_timestamp(value)


Timestamp = Annotated[datetime, AfterValidator(ensure_aware)]
LenientTimestamp = Annotated[datetime | None, BeforeValidator(_lenient)]
