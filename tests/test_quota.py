"""Usage limit evaluation."""
from datetime import timezone
from zoneinfo import ZoneInfo

import pytest

from booking.errors import AuthorizationError
from booking.models import Group, ResourceLimit, UserGroup
from booking.quota import (
    SYSTEM_DEFAULT_LIMIT_ID,
    LimitEvaluator,
    system_default_limit,
    usage_windows,
)
from booking.repository import BookingRepository

from conftest import add_booking, add_resource, at


def add_limit(session, **kwargs):
    fields = dict(name="lab quota", target_kind="user")
    fields.update(kwargs)
    limit = ResourceLimit(**fields)
    session.add(limit)
    session.commit()
    return limit


def add_group(session, name, *members):
    group = Group(name=name)
    session.add(group)
    session.commit()
    for m in members:
        session.add(UserGroup(user_id=m.id, group_id=group.id))
    session.commit()
    return group


def test_system_default_is_built_from_settings(settings):
    limit = system_default_limit("u1", settings)
    assert limit.id == SYSTEM_DEFAULT_LIMIT_ID
    assert limit.priority == -1000
    assert limit.resource_id is None
    assert (limit.max_hours_per_day, limit.max_hours_per_week, limit.max_hours_per_month) == (24, 40, 120)


def test_windows_start_on_sunday_and_first_of_month():
    w = usage_windows(at(15, 13), timezone.utc)
    assert w.day_start == at(15)
    assert w.day_end == at(16)
    assert w.week_start == at(11)  # Sunday
    assert w.week_end == at(18)
    assert w.month_start == at(1)
    assert w.earliest == at(1)


def test_windows_follow_local_timezone():
    # 02:00 UTC on the 15th is still the 14th in Toronto
    w = usage_windows(at(15, 2), ZoneInfo("America/Toronto"))
    assert w.day_start.astimezone(timezone.utc) == at(14, 4)


def test_week_reaching_into_previous_month_is_measured():
    w = usage_windows(at(1, 10), timezone.utc)  # Thursday 1 October
    assert w.week_start.day == 27 and w.week_start.month == 9
    assert w.earliest == w.week_start


def test_daily_default_scenario(service, session, resource, user):
    other = add_resource(session, name="cpu pool")
    add_booking(session, other, user, at(15, 0), at(15, 20), 1)

    result = service.validate_booking(user.id, resource.id, at(15, 20), at(16, 1), "shared")

    assert not result.valid
    assert result.violations == [
        "Would exceed daily limit of 24 hours (current: 20.00h, requested: 5.00h) - System Default Limits"
    ]
    assert result.usage_stats.daily_hours == 20.0


def test_shorter_booking_becomes_admissible(service, session, resource, user):
    add_booking(session, resource, user, at(15, 0), at(15, 20), 1)

    assert not service.validate_booking(user.id, resource.id, at(15, 20), at(16, 1), "shared").valid
    assert service.validate_booking(user.id, resource.id, at(15, 20), at(15, 23, 30), "shared").valid


def test_weekly_and_monthly_usage_counts_only_window(service, session, resource, user):
    add_booking(session, resource, user, at(10, 8), at(10, 18), 1)   # Saturday, previous week
    add_booking(session, resource, user, at(12, 8), at(12, 18), 1)   # Monday, this week
    add_booking(session, resource, user, at(20, 8), at(20, 10), 1)   # next week, same month

    result = service.validate_booking(user.id, resource.id, at(15, 8), at(15, 9), "shared")

    assert result.usage_stats.weekly_hours == 10.0
    assert result.usage_stats.monthly_hours == 22.0
    assert result.usage_stats.daily_hours == 0.0


def test_cancelled_bookings_do_not_count(service, session, resource, user):
    add_booking(session, resource, user, at(15, 0), at(15, 20), 1, status="cancelled")

    assert service.validate_booking(user.id, resource.id, at(15, 20), at(16, 1), "shared").valid


def test_concurrent_bookings_limit(service, session, resource, user):
    add_limit(session, target_id=user.id, max_concurrent_bookings=1)
    other = add_resource(session, name="other")
    add_booking(session, other, user, at(15, 9), at(15, 11), 1)

    overlapping = service.validate_booking(user.id, resource.id, at(15, 10), at(15, 12), "shared")
    adjacent = service.validate_booking(user.id, resource.id, at(15, 11), at(15, 12), "shared")

    assert overlapping.violations == ["Would exceed concurrent bookings limit of 1 (current: 1) - lab quota"]
    assert overlapping.usage_stats.concurrent_bookings == 1
    assert adjacent.valid


def test_daily_bookings_limit(service, session, resource, user):
    add_limit(session, target_id=user.id, max_bookings_per_day=2)
    add_booking(session, resource, user, at(15, 1), at(15, 2), 1)
    add_booking(session, resource, user, at(15, 3), at(15, 4), 1)

    result = service.validate_booking(user.id, resource.id, at(15, 10), at(15, 11), "shared")

    assert result.violations == ["Would exceed daily bookings limit of 2 (current: 2) - lab quota"]
    assert service.validate_booking(user.id, resource.id, at(16, 10), at(16, 11), "shared").valid


def test_allowed_booking_types(service, session, resource, user):
    add_limit(session, target_id=user.id, allowed_booking_types=["shared"])
    add_limit(session, name="open", target_id=user.id, allowed_booking_types=[])

    result = service.validate_booking(user.id, resource.id, at(15, 10), at(15, 11), "exclusive")

    assert result.violations == ["Booking type 'exclusive' not allowed by limit: lab quota"]


def test_every_limit_applies_and_higher_priority_reports_first(service, session, resource, user):
    add_limit(session, name="low", target_id=user.id, max_hours_per_day=2, priority=1)
    add_limit(session, name="high", target_id=user.id, max_hours_per_day=3, priority=10)

    result = service.validate_booking(user.id, resource.id, at(15, 10), at(15, 14), "shared")

    assert [v.rsplit(" - ", 1)[1] for v in result.violations] == ["high", "low"]


def test_inactive_and_foreign_resource_limits_are_ignored(service, session, resource, user):
    other = add_resource(session, name="other")
    add_limit(session, target_id=user.id, max_hours_per_day=1, is_active=False)
    add_limit(session, target_id=user.id, max_hours_per_day=1, resource_id=other.id)
    add_limit(session, name="here", target_id=user.id, max_hours_per_day=1, resource_id=resource.id)

    result = service.validate_booking(user.id, resource.id, at(15, 10), at(15, 12), "shared")

    assert len(result.violations) == 1
    assert result.violations[0].endswith("- here")


def test_group_limit_is_a_shared_pool(service, session, resource, user, other_user):
    group = add_group(session, "vision-lab", user, other_user)
    add_limit(session, name="lab pool", target_kind="group", target_id=group.id, max_hours_per_day=10)
    add_booking(session, resource, other_user, at(15, 0), at(15, 8), 1)

    result = service.validate_booking(user.id, resource.id, at(15, 10), at(15, 13), "shared")

    assert result.violations == [
        "Would exceed daily limit of 10 hours (current: 8.00h, requested: 3.00h) - lab pool"
    ]
    # usage stats stay personal
    assert result.usage_stats.daily_hours == 0.0


def test_group_per_person_limit_uses_own_usage(service, session, resource, user, other_user):
    group = add_group(session, "vision-lab", user, other_user)
    add_limit(session, name="each", target_kind="group_per_person", target_id=group.id, max_hours_per_day=10)
    add_booking(session, resource, other_user, at(15, 0), at(15, 8), 1)

    assert service.validate_booking(user.id, resource.id, at(15, 10), at(15, 13), "shared").valid
    assert not service.validate_booking(other_user.id, resource.id, at(15, 10), at(15, 13), "shared").valid


def test_limits_of_other_groups_do_not_apply(session, settings, resource, user, other_user):
    group = add_group(session, "other-lab", other_user)
    add_limit(session, target_kind="group_per_person", target_id=group.id, max_hours_per_day=1)

    limits = LimitEvaluator(BookingRepository(session), settings).effective_limits(user.id, resource.id)

    assert [l.id for l in limits] == [SYSTEM_DEFAULT_LIMIT_ID]


def test_validation_is_idempotent(service, session, resource, user):
    add_booking(session, resource, user, at(15, 0), at(15, 20), 1)

    first = service.validate_booking(user.id, resource.id, at(15, 20), at(16, 1), "shared")
    second = service.validate_booking(user.id, resource.id, at(15, 20), at(16, 1), "shared")

    assert first.to_dict() == second.to_dict()


def test_only_admins_validate_for_others(service, session, resource, user, other_user, admin):
    with pytest.raises(AuthorizationError):
        service.validate_booking(user.id, resource.id, at(15, 1), at(15, 2), "shared", caller_id=other_user.id)
    assert service.validate_booking(user.id, resource.id, at(15, 1), at(15, 2), "shared", caller_id=admin.id).valid
