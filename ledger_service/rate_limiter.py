"""
Rolling-window submission limits.

`check_rate_limit` is pure: the intake path loads the user's trailing day of
events under the balance-row lock and passes them in, which makes the check
atomic with respect to concurrent submissions from the same user.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, NamedTuple, Optional
from common.settings import RateLimits, settings

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


class RecentEvent(NamedTuple):
    created_at: datetime
    points: int


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    events_last_hour: int = 0
    events_last_day: int = 0
    points_last_hour: int = 0
    points_last_day: int = 0


def check_rate_limit(recent_events: Iterable[RecentEvent], candidate_points: int, now: datetime,
                     limits: RateLimits = None) -> RateLimitDecision:
    """Evaluate the candidate submission against every ceiling.

    Counts include the candidate itself, so with the default ceilings the
    101st event inside an hour is refused. Only positive points count
    toward the points ceilings.
    """
    limits = limits or settings.rate_limits
    hour_start = now - HOUR
    day_start = now - DAY

    events_hour = events_day = 1
    gained = max(candidate_points, 0)
    points_hour = points_day = gained
    for event in recent_events:
        if event.created_at <= day_start or event.created_at > now:
            continue
        gain = max(event.points, 0)
        events_day += 1
        points_day += gain
        if event.created_at > hour_start:
            events_hour += 1
            points_hour += gain

    decision = RateLimitDecision(
        allowed=True,
        events_last_hour=events_hour,
        events_last_day=events_day,
        points_last_hour=points_hour,
        points_last_day=points_day,
    )
    if events_hour > limits.events_per_hour:
        decision.reason = "Hourly event limit exceeded"
    elif events_day > limits.events_per_day:
        decision.reason = "Daily event limit exceeded"
    elif points_hour > limits.points_per_hour:
        decision.reason = "Hourly points limit exceeded"
    elif points_day > limits.points_per_day:
        decision.reason = "Daily points limit exceeded"
    decision.allowed = decision.reason is None
    return decision
