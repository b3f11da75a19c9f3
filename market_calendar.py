"""Regular-session gate for the US options market.

The gate answers one question, "is the exchange open right now?", and errs on
the side of closed whenever it cannot answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Protocol
from zoneinfo import ZoneInfo

import pandas_market_calendars as mcal

LOGGER = logging.getLogger(__name__)

EXCHANGE_TZ_NAME = "America/New_York"
SESSION_OPEN = time(9, 30)
SESSION_CLOSE = time(16, 0)

# NYSE full-day closures. Early closes are treated as regular sessions.
NYSE_HOLIDAYS: frozenset[date] = frozenset(
    date.fromisoformat(d)
    for d in (
        "2025-01-01",  # New Year's Day
        "2025-01-09",  # National Day of Mourning (President Carter)
        "2025-01-20",  # Martin Luther King Jr. Day
        "2025-02-17",  # Washington's Birthday
        "2025-04-18",  # Good Friday
        "2025-05-26",  # Memorial Day
        "2025-06-19",  # Juneteenth
        "2025-07-04",  # Independence Day
        "2025-09-01",  # Labor Day
        "2025-11-27",  # Thanksgiving Day
        "2025-12-25",  # Christmas Day
        "2026-01-01",
        "2026-01-19",
        "2026-02-16",
        "2026-04-03",
        "2026-05-25",
        "2026-06-19",
        "2026-07-03",  # Independence Day (observed)
        "2026-09-07",
        "2026-11-26",
        "2026-12-25",
        "2027-01-01",
        "2027-01-18",
        "2027-02-15",
        "2027-03-26",
        "2027-05-31",
        "2027-06-18",  # Juneteenth (observed)
        "2027-07-05",  # Independence Day (observed)
        "2027-09-06",
        "2027-11-25",
        "2027-12-24",  # Christmas Day (observed)
    )
)


class HolidayCalendar(Protocol):
    def is_holiday(self, day: date) -> bool: ...


class StaticHolidayCalendar:
    def __init__(self, holidays: Iterable[date | str] | None = None) -> None:
        if holidays is None:
            self._holidays = set(NYSE_HOLIDAYS)
        else:
            self._holidays = {h if isinstance(h, date) else date.fromisoformat(str(h).strip()) for h in holidays}

    def is_holiday(self, day: date) -> bool:
        return day in self._holidays


class ExchangeHolidayCalendar:
    """Holidays from the exchange schedule published by pandas_market_calendars."""

    def __init__(self, exchange: str = "XNYS") -> None:
        self._calendar = mcal.get_calendar(exchange)

    def is_holiday(self, day: date) -> bool:
        if day.weekday() >= 5:
            return False
        schedule = self._calendar.schedule(start_date=day, end_date=day)
        return schedule.empty


def build_holiday_calendar(kind: str, overrides: list[str] | None = None) -> HolidayCalendar:
    if kind == "xnys":
        return ExchangeHolidayCalendar("XNYS")
    if kind == "static":
        return StaticHolidayCalendar(overrides or None)
    raise ValueError(f"unknown holiday calendar: {kind!r}")


def exchange_tz() -> ZoneInfo:
    return ZoneInfo(EXCHANGE_TZ_NAME)


def trading_date_for(now: datetime) -> date:
    """Exchange-local calendar date used to bucket one run's rows."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(exchange_tz()).date()


@dataclass(frozen=True)
class MarketStatus:
    open: bool
    reason: str
    local_time: datetime | None = None
    trading_date: date | None = None
    next_open: datetime | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "open": self.open,
            "reason": self.reason,
            "currentESTTime": self.local_time.isoformat() if self.local_time else None,
            "tradingDate": self.trading_date.isoformat() if self.trading_date else None,
            "nextMarketOpen": self.next_open.isoformat() if self.next_open else None,
        }


class MarketWindowGate:
    def __init__(self, calendar: HolidayCalendar) -> None:
        self.calendar = calendar

    def _is_session_day(self, day: date) -> bool:
        return day.weekday() < 5 and not self.calendar.is_holiday(day)

    def next_open(self, local_now: datetime) -> datetime:
        """Next 09:30 local on a session day at or after `local_now`."""
        day = local_now.date()
        if local_now.time() >= SESSION_OPEN or not self._is_session_day(day):
            day += timedelta(days=1)
        # A year of consecutive closures would mean a broken calendar.
        for _ in range(366):
            if self._is_session_day(day):
                return datetime.combine(day, SESSION_OPEN, tzinfo=local_now.tzinfo)
            day += timedelta(days=1)
        raise RuntimeError("no session day found within a year")

    def status(self, now: datetime | None = None) -> MarketStatus:
        try:
            now = now or datetime.now(timezone.utc)
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            local_now = now.astimezone(exchange_tz())
            day = local_now.date()

            if day.weekday() >= 5:
                reason = "weekend"
            elif self.calendar.is_holiday(day):
                reason = "holiday"
            elif SESSION_OPEN <= local_now.time() <= SESSION_CLOSE:
                return MarketStatus(open=True, reason="regular session", local_time=local_now, trading_date=day)
            else:
                reason = "outside regular session"

            return MarketStatus(
                open=False,
                reason=reason,
                local_time=local_now,
                trading_date=day,
                next_open=self.next_open(local_now),
            )
        except Exception:
            LOGGER.exception("market hours check failed; treating market as closed")
            return MarketStatus(open=False, reason="error")

    def is_open(self, now: datetime | None = None) -> bool:
        return self.status(now).open
