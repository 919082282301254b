"""
Rolling send counters for rate limiting.

Four independent scopes, each a count per time bucket: global per-minute,
per-hour and per-day, plus per-contact-per-day. Bucket keys are derived from
UTC time, so a scope "resets" simply because a new key starts being used;
stale keys are pruned to keep the persisted structure small.
"""
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field


def minute_key(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")


def hour_key(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H")


def day_key(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def contact_day_key(now: datetime, handle: str) -> str:
    return f"{day_key(now)}|{handle}"


class CounterSnapshot(BaseModel):
    """Counts for one contact at one instant."""
    per_minute: int = 0
    per_hour: int = 0
    per_day: int = 0
    per_contact_per_day: int = 0


class RateLimitCounters(BaseModel):
    """Bucketed send counts. Pure data: reading never mutates."""
    by_minute: dict[str, int] = Field(default_factory=dict)
    by_hour: dict[str, int] = Field(default_factory=dict)
    by_day: dict[str, int] = Field(default_factory=dict)
    by_contact_day: dict[str, int] = Field(default_factory=dict)

    def snapshot(self, handle: str, now: datetime) -> CounterSnapshot:
        """Current counts relevant to a send to ``handle`` at ``now``."""
        return CounterSnapshot(
            per_minute=self.by_minute.get(minute_key(now), 0),
            per_hour=self.by_hour.get(hour_key(now), 0),
            per_day=self.by_day.get(day_key(now), 0),
            per_contact_per_day=self.by_contact_day.get(contact_day_key(now, handle), 0),
        )

    def increment(self, handle: str, now: datetime) -> None:
        """Count one delivered message in all four scopes."""
        for bucket, key in (
            (self.by_minute, minute_key(now)),
            (self.by_hour, hour_key(now)),
            (self.by_day, day_key(now)),
            (self.by_contact_day, contact_day_key(now, handle)),
        ):
            bucket[key] = bucket.get(key, 0) + 1

    def prune(self, now: datetime) -> int:
        """Drop buckets older than the previous period of each scope.

        Returns:
            Number of keys removed.
        """
        keep_minutes = {minute_key(now - timedelta(minutes=i)) for i in range(3)}
        keep_hours = {hour_key(now - timedelta(hours=i)) for i in range(2)}
        keep_days = {day_key(now - timedelta(days=i)) for i in range(2)}

        removed = 0
        for bucket, keep in (
            (self.by_minute, keep_minutes),
            (self.by_hour, keep_hours),
            (self.by_day, keep_days),
        ):
            for key in [k for k in bucket if k not in keep]:
                del bucket[key]
                removed += 1
        for key in [k for k in self.by_contact_day if k.split("|", 1)[0] not in keep_days]:
            del self.by_contact_day[key]
            removed += 1
        return removed
