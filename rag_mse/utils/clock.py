"""Clock helpers.

All persisted timestamps are naive UTC. Services take a ``now`` argument or a
``Clock`` callable so tests can pin time instead of sleeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
