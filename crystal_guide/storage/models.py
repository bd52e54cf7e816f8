"""
Data models for storage layer.

Defines the records persisted through the key/value store.
"""

from dataclasses import asdict, dataclass, fields, replace
from datetime import date
from typing import Any, Dict


@dataclass(frozen=True)
class UsageRecord:
    """Running API usage counters.

    ``successful_requests + failed_requests == total_requests`` holds after
    every increment. ``daily_count`` is reset when ``last_reset_date`` is no
    longer today; ``monthly_count`` is only reset administratively.
    """
    daily_count: int
    monthly_count: int
    last_reset_date: str
    total_requests: int
    successful_requests: int
    failed_requests: int

    @classmethod
    def zero(cls, today: date) -> "UsageRecord":
        """Fresh record for a device that has never called the provider."""
        return cls(
            daily_count=0,
            monthly_count=0,
            last_reset_date=today.isoformat(),
            total_requests=0,
            successful_requests=0,
            failed_requests=0,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        """Build a record from its persisted form.

        Raises:
            ValueError: If a field is missing, of the wrong type or negative
        """
        if not isinstance(data, dict):
            raise ValueError("usage record must be a JSON object")

        values = {}
        for f in fields(cls):
            if f.name not in data:
                raise ValueError(f"usage record missing '{f.name}'")
            value = data[f.name]
            if f.name == "last_reset_date":
                if not isinstance(value, str) or not value:
                    raise ValueError("last_reset_date must be a non-empty string")
            elif isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"'{f.name}' must be a non-negative integer")
            values[f.name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def recorded(self, success: bool) -> "UsageRecord":
        """Return a copy with one more terminal outcome counted."""
        return replace(
            self,
            daily_count=self.daily_count + 1,
            monthly_count=self.monthly_count + 1,
            total_requests=self.total_requests + 1,
            successful_requests=self.successful_requests + (1 if success else 0),
            failed_requests=self.failed_requests + (0 if success else 1),
        )


@dataclass(frozen=True)
class ClientSettings:
    """User-editable behaviour of the analysis client."""
    auto_retry: bool = True
    max_retries: int = 3
    timeout_ms: int = 30000
    enable_offline_queue: bool = True
    enable_usage_tracking: bool = True
    enable_analytics: bool = True

    def __post_init__(self):
        """Validate numeric settings."""
        for name in ("auto_retry", "enable_offline_queue",
                     "enable_usage_tracking", "enable_analytics"):
            if not isinstance(getattr(self, name), bool):
                raise ValueError(f"{name} must be a boolean")
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int) \
                or self.max_retries < 1:
            raise ValueError("max_retries must be an integer >= 1")
        if isinstance(self.timeout_ms, bool) or not isinstance(self.timeout_ms, int) \
                or self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be an integer > 0")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientSettings":
        """Merge a persisted blob over the defaults, ignoring unknown fields."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def merged(self, **changes: Any) -> "ClientSettings":
        """Return a copy with ``changes`` applied.

        Raises:
            ValueError: If a field is unknown or a value is invalid
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
