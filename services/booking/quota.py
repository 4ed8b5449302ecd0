# ============================================================
# quota.py — Usage limit evaluation
# ------------------------------------------------------------
# Resolves the limits that apply to a user on a resource
# (direct user limits, group limits, per-person group limits,
# plus the system default built from Settings), measures the
# current usage around the proposed booking and reports every
# limit the booking would break.
#
# The same evaluate() runs for the read-only preview endpoint
# and inside the creation transaction.
# ============================================================
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Dict, List, Sequence

from booking.config import Settings
from booking.models import CONSUMED_STATUSES, Booking, LimitTargetKind, ResourceLimit, as_utc
from booking.repository import BookingRepository

logger = logging.getLogger(__name__)

SYSTEM_DEFAULT_LIMIT_ID = "system-default"
SYSTEM_DEFAULT_PRIORITY = -1000


def system_default_limit(user_id: str, settings: Settings) -> ResourceLimit:
    """Baseline quota every user gets, whether or not limits are configured."""
    return ResourceLimit(
        id=SYSTEM_DEFAULT_LIMIT_ID,
        name="System Default Limits",
        description="System-wide default limits for all users",
        target_kind=LimitTargetKind.USER.value,
        target_id=user_id,
        resource_id=None,
        max_hours_per_day=settings.default_max_hours_per_day,
        max_hours_per_week=settings.default_max_hours_per_week,
        max_hours_per_month=settings.default_max_hours_per_month,
        priority=SYSTEM_DEFAULT_PRIORITY,
        is_active=True,
    )


# ------------------------------------------------------------
# Calendar windows
# ------------------------------------------------------------
# Anchored to the proposed booking's start, in local time.
# Weeks start on Sunday.
# ------------------------------------------------------------
@dataclass(frozen=True)
class UsageWindows:
    day_start: datetime
    day_end: datetime
    week_start: datetime
    week_end: datetime
    month_start: datetime
    month_end: datetime

    @property
    def earliest(self) -> datetime:
        return min(self.week_start, self.month_start)


def _local_midnight(d: date, tz: tzinfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def usage_windows(start: datetime, tz: tzinfo) -> UsageWindows:
    local_day = as_utc(start).astimezone(tz).date()
    week_day = local_day - timedelta(days=(local_day.weekday() + 1) % 7)
    month_day = local_day.replace(day=1)
    next_month = (month_day + timedelta(days=32)).replace(day=1)
    return UsageWindows(
        day_start=_local_midnight(local_day, tz),
        day_end=_local_midnight(local_day + timedelta(days=1), tz),
        week_start=_local_midnight(week_day, tz),
        week_end=_local_midnight(week_day + timedelta(days=7), tz),
        month_start=_local_midnight(month_day, tz),
        month_end=_local_midnight(next_month, tz),
    )


@dataclass(frozen=True)
class UsageStats:
    daily_hours: float = 0.0
    weekly_hours: float = 0.0
    monthly_hours: float = 0.0
    concurrent_bookings: int = 0
    daily_bookings: int = 0

    def rounded(self) -> "UsageStats":
        return UsageStats(
            daily_hours=round(self.daily_hours, 2),
            weekly_hours=round(self.weekly_hours, 2),
            monthly_hours=round(self.monthly_hours, 2),
            concurrent_bookings=self.concurrent_bookings,
            daily_bookings=self.daily_bookings,
        )


def measure_usage(
    window_bookings: Sequence[Booking],
    concurrent: Sequence[Booking],
    windows: UsageWindows,
) -> UsageStats:
    def starting_in(lo: datetime, hi: datetime) -> List[Booking]:
        return [b for b in window_bookings if lo <= as_utc(b.start_time) < hi]

    daily = starting_in(windows.day_start, windows.day_end)
    weekly = starting_in(windows.week_start, windows.week_end)
    monthly = starting_in(windows.month_start, windows.month_end)
    return UsageStats(
        daily_hours=sum(b.duration_hours for b in daily),
        weekly_hours=sum(b.duration_hours for b in weekly),
        monthly_hours=sum(b.duration_hours for b in monthly),
        concurrent_bookings=len(concurrent),
        daily_bookings=len(daily),
    )


@dataclass
class LimitCheckResult:
    valid: bool
    violations: List[str] = field(default_factory=list)
    usage_stats: UsageStats = field(default_factory=UsageStats)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "violations": list(self.violations),
            "usage_stats": asdict(self.usage_stats),
        }


def limit_violations(
    limit: ResourceLimit,
    usage: UsageStats,
    duration_hours: float,
    booking_type: str,
) -> List[str]:
    """What a single limit objects to. Limits with None fields impose nothing."""
    out = []
    name = limit.name

    if limit.allowed_booking_types and booking_type not in limit.allowed_booking_types:
        out.append(f"Booking type '{booking_type}' not allowed by limit: {name}")

    buckets = (
        ("daily", limit.max_hours_per_day, usage.daily_hours),
        ("weekly", limit.max_hours_per_week, usage.weekly_hours),
        ("monthly", limit.max_hours_per_month, usage.monthly_hours),
    )
    for label, cap, current in buckets:
        if cap is not None and current + duration_hours > cap:
            out.append(
                f"Would exceed {label} limit of {cap} hours "
                f"(current: {current:.2f}h, requested: {duration_hours:.2f}h) - {name}"
            )

    if limit.max_concurrent_bookings is not None and usage.concurrent_bookings >= limit.max_concurrent_bookings:
        out.append(
            f"Would exceed concurrent bookings limit of {limit.max_concurrent_bookings} "
            f"(current: {usage.concurrent_bookings}) - {name}"
        )

    if limit.max_bookings_per_day is not None and usage.daily_bookings >= limit.max_bookings_per_day:
        out.append(
            f"Would exceed daily bookings limit of {limit.max_bookings_per_day} "
            f"(current: {usage.daily_bookings}) - {name}"
        )
    return out


class LimitEvaluator:
    def __init__(self, repo: BookingRepository, settings: Settings):
        self.repo = repo
        self.settings = settings

    def effective_limits(self, user_id: str, resource_id: str) -> List[ResourceLimit]:
        group_ids = self.repo.group_ids_for_user(user_id)
        limits = self.repo.active_limits(user_id, group_ids, resource_id)
        limits.append(system_default_limit(user_id, self.settings))
        # ordering only affects the order of reported violations;
        # every limit must pass
        return sorted(limits, key=lambda l: l.priority, reverse=True)

    def usage_for(self, user_ids: Sequence[str], start: datetime, end: datetime) -> UsageStats:
        windows = usage_windows(start, self.settings.tz)
        window_bookings = self.repo.holding_bookings_for_users(user_ids, windows.earliest)
        concurrent = self.repo.overlapping_for_users(user_ids, start, end)
        return measure_usage(window_bookings, concurrent, windows)

    def evaluate(
        self,
        user_id: str,
        resource_id: str,
        start: datetime,
        end: datetime,
        booking_type: str,
    ) -> LimitCheckResult:
        duration_hours = (as_utc(end) - as_utc(start)).total_seconds() / 3600
        own_usage = self.usage_for([user_id], start, end)
        group_usage: Dict[str, UsageStats] = {}

        violations = []
        for limit in self.effective_limits(user_id, resource_id):
            usage = own_usage
            if limit.target_kind == LimitTargetKind.GROUP.value:
                # a group limit is a shared pool for all members
                if limit.target_id not in group_usage:
                    members = self.repo.member_ids_for_group(limit.target_id)
                    group_usage[limit.target_id] = self.usage_for(members, start, end)
                usage = group_usage[limit.target_id]
            violations.extend(limit_violations(limit, usage, duration_hours, booking_type))

        if violations:
            logger.info("[quota] user=%s resource=%s: %d violation(s)", user_id, resource_id, len(violations))
        return LimitCheckResult(valid=not violations, violations=violations, usage_stats=own_usage.rounded())


# ------------------------------------------------------------
# Usage summary
# ------------------------------------------------------------
# Reporting view of time a user actually consumed over a period
# (approved, active and completed bookings lying inside it).
# ------------------------------------------------------------
@dataclass
class UsageSummary:
    user_id: str
    period_start: datetime
    period_end: datetime
    total_bookings: int = 0
    total_hours: float = 0.0
    average_booking_hours: float = 0.0
    by_resource: Dict[str, dict] = field(default_factory=dict)
    by_status: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "period": {
                "start": as_utc(self.period_start).isoformat(),
                "end": as_utc(self.period_end).isoformat(),
            },
            "total_bookings": self.total_bookings,
            "total_hours": round(self.total_hours, 2),
            "average_booking_hours": round(self.average_booking_hours, 2),
            "by_resource": {
                rid: {"count": v["count"], "hours": round(v["hours"], 2)} for rid, v in self.by_resource.items()
            },
            "by_status": dict(self.by_status),
        }


def summarize_usage(
    user_id: str,
    bookings: Sequence[Booking],
    period_start: datetime,
    period_end: datetime,
) -> UsageSummary:
    by_resource: Dict[str, dict] = {}
    by_status = {s: 0 for s in CONSUMED_STATUSES}
    total_hours = 0.0
    for b in bookings:
        hours = b.duration_hours
        total_hours += hours
        entry = by_resource.setdefault(b.resource_id, {"count": 0, "hours": 0.0})
        entry["count"] += 1
        entry["hours"] += hours
        by_status[b.status] = by_status.get(b.status, 0) + 1

    return UsageSummary(
        user_id=user_id,
        period_start=period_start,
        period_end=period_end,
        total_bookings=len(bookings),
        total_hours=total_hours,
        average_booking_hours=total_hours / len(bookings) if bookings else 0.0,
        by_resource=by_resource,
        by_status=by_status,
    )
