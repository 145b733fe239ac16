"""Replay window for init data: reject payloads that are too old or from the future."""

from __future__ import annotations

from datetime import timedelta
from typing import Union

from .errors import Expired, FutureDated

Seconds = Union[int, float, timedelta]

DEFAULT_CLOCK_SKEW = 30


def _seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def check_freshness(auth_date: int, now: int, max_age: Seconds, skew: Seconds = DEFAULT_CLOCK_SKEW) -> None:
    """
    auth_date == now - max_age is still fresh; one second older is Expired.
    auth_date up to now + skew is tolerated; beyond that is FutureDated.
    """
    age = now - auth_date

    if auth_date > now + _seconds(skew):
        raise FutureDated(f"auth_date {-age}s in the future")

    if age > _seconds(max_age):
        raise Expired(f"auth_date {age}s old")
