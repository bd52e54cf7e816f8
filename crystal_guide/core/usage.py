"""
Usage tracking and limit enforcement.

Counts provider calls per day and per month against the configured limits.

The limit check is advisory: it runs once before a call is queued and is not
re-validated against concurrent increments. Increments happen only on the
request queue worker, one call at a time.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Callable, Optional

from ..config.loader import UsageLimits
from ..storage.kv_store import KeyValueStore
from ..storage.models import UsageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageDecision:
    """Whether a new provider call is permitted."""
    allowed: bool
    reason: Optional[str] = None


class UsageTracker:
    """Persistent daily/monthly request counters."""

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        limits: Optional[UsageLimits] = None,
        today: Callable[[], date] = date.today,
    ):
        """Initialize the tracker.

        Args:
            store: Key/value store holding the usage record
            key: Storage key of the usage record
            limits: Daily and monthly ceilings (defaults to 100/1000)
            today: Source of the current local calendar date
        """
        self.store = store
        self.key = key
        self.limits = limits or UsageLimits()
        self._today = today

    async def _save(self, usage: UsageRecord) -> None:
        await self.store.set(self.key, usage.to_dict())

    async def get_usage(self) -> UsageRecord:
        """Return the current usage record, rolling the daily counter over.

        A missing or unreadable record is replaced by a zeroed one. If the
        record was last reset on another date, ``daily_count`` is reset and
        the correction persisted before returning.

        Raises:
            StorageError: If an initialized or corrected record cannot be saved
        """
        current = self._today()
        today = current.isoformat()
        stored = await self.store.get(self.key)

        usage = None
        if stored is not None:
            try:
                usage = UsageRecord.from_dict(stored)
            except ValueError as e:
                logger.warning("Discarding invalid usage record: %s", e)

        if usage is None:
            usage = UsageRecord.zero(current)
            await self._save(usage)
            return usage

        if usage.last_reset_date != today:
            logger.info("New day (%s): resetting daily usage from %d",
                        today, usage.daily_count)
            usage = replace(usage, daily_count=0, last_reset_date=today)
            await self._save(usage)

        return usage

    async def can_make_request(self) -> UsageDecision:
        """Check the daily and monthly limits.

        Raises:
            StorageError: If the usage record cannot be initialized
        """
        usage = await self.get_usage()

        if usage.daily_count >= self.limits.daily_requests:
            return UsageDecision(False, "Daily API usage limit exceeded")
        if usage.monthly_count >= self.limits.monthly_requests:
            return UsageDecision(False, "Monthly API usage limit exceeded")
        return UsageDecision(True)

    async def increment_usage(self, success: bool = True) -> UsageRecord:
        """Count one terminal outcome of a provider call.

        Must be called exactly once per logical call, never per retry.

        Raises:
            StorageError: If the updated record cannot be saved
        """
        usage = (await self.get_usage()).recorded(success)
        await self._save(usage)
        logger.debug("Usage recorded (success=%s): daily=%d monthly=%d",
                     success, usage.daily_count, usage.monthly_count)
        return usage

    async def reset_monthly_usage(self) -> UsageRecord:
        """Zero the monthly counter. Administrative, never automatic.

        Raises:
            StorageError: If the record cannot be saved
        """
        usage = await self.get_usage()
        usage = replace(usage, monthly_count=0)
        await self._save(usage)
        logger.info("Monthly usage reset")
        return usage
