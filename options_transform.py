"""Snapshot entry -> persisted row, including the income/risk score.

Score:
    days_to_expiry = max(1, ceil((expiration - now) / 1 day))
    theta_income   = |theta| * 100
    premium_yield  = (price / strike) * (365 / days_to_expiry) * 2
    delta_risk     = delta * 50
    gamma_risk     = gamma * 1000
    vega_risk      = vega * 10
    score = round2(theta_income + premium_yield - delta_risk - gamma_risk - vega_risk)

`price` is the contract's representative price (session close, else last
trade). Expiration is measured from 00:00 UTC of the expiration date.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timezone
from typing import Iterable

from coerce import int_or_zero, round_half_up, zero_if_missing
from snapshot_models import CanonicalOptionRow, ContractSnapshot

LOGGER = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


def _expiration_instant(expiration: date) -> datetime:
    return datetime.combine(expiration, time(0, 0), tzinfo=timezone.utc)


def _raw_days_until(expiration: date, now: datetime) -> int:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    seconds = (_expiration_instant(expiration) - now).total_seconds()
    return math.ceil(seconds / SECONDS_PER_DAY)


def days_to_expiry(expiration: date, now: datetime) -> int:
    """Whole days until expiration, never less than one."""
    return max(1, _raw_days_until(expiration, now))


def compute_score(
    *,
    theta: float,
    gamma: float,
    delta: float,
    vega: float,
    price: float,
    strike: float,
    days: int,
) -> float:
    theta_income = abs(theta) * 100
    premium_yield = (price / strike) * (365 / days) * 2
    delta_risk = delta * 50
    gamma_risk = gamma * 1000
    vega_risk = vega * 10
    return round_half_up(theta_income + premium_yield - delta_risk - gamma_risk - vega_risk, 2)


def transform_contract(
    snapshot: ContractSnapshot,
    *,
    underlying: str,
    trading_date: date,
    now: datetime,
    underlying_price: float | None = None,
) -> CanonicalOptionRow | None:
    """Build the persisted row for one contract, or None when it must be skipped."""
    details = snapshot.details
    contract_id = (details.ticker or "").strip()
    expiration = details.expiration_date
    strike = details.strike_price
    price = snapshot.representative_price

    if not contract_id:
        LOGGER.debug("skip contract without ticker")
        return None
    if expiration is None:
        LOGGER.debug("skip %s: no expiration_date", contract_id)
        return None
    if strike is None or strike <= 0:
        LOGGER.debug("skip %s: no usable strike_price", contract_id)
        return None
    if price is None:
        LOGGER.debug("skip %s: no close or trade price", contract_id)
        return None
    if expiration < trading_date:
        LOGGER.debug("skip %s: expired on %s", contract_id, expiration)
        return None

    greeks = snapshot.greeks
    quote = snapshot.last_quote
    trade = snapshot.last_trade
    day = snapshot.day

    delta = zero_if_missing(greeks.delta)
    gamma = zero_if_missing(greeks.gamma)
    theta = zero_if_missing(greeks.theta)
    vega = zero_if_missing(greeks.vega)

    bid = zero_if_missing(quote.bid)
    ask = zero_if_missing(quote.ask)
    if bid > 0 and ask > 0:
        mid_price = (bid + ask) / 2
        spread = ask - bid
    else:
        mid_price = 0.0
        spread = 0.0

    score = compute_score(
        theta=theta,
        gamma=gamma,
        delta=delta,
        vega=vega,
        price=price,
        strike=strike,
        days=days_to_expiry(expiration, now),
    )

    return CanonicalOptionRow(
        trading_date=trading_date,
        contract_id=contract_id,
        underlying=underlying,
        contract_type=snapshot.contract_type or "unknown",
        strike_price=strike,
        expiration_date=expiration,
        exercise_style=details.exercise_style,
        shares_per_contract=int_or_zero(details.shares_per_contract),
        created_at=now,
        underlying_price=underlying_price if underlying_price else None,
        delta=delta,
        gamma=gamma,
        theta=theta,
        vega=vega,
        rho=zero_if_missing(greeks.rho),
        bid=bid,
        ask=ask,
        bid_size=int_or_zero(quote.bid_size),
        ask_size=int_or_zero(quote.ask_size),
        mid_price=mid_price,
        spread=spread,
        last_price=zero_if_missing(trade.price),
        last_size=int_or_zero(trade.size),
        day_open=zero_if_missing(day.open),
        day_high=zero_if_missing(day.high),
        day_low=zero_if_missing(day.low),
        day_close=zero_if_missing(day.close),
        day_vwap=zero_if_missing(day.vwap),
        volume=int_or_zero(day.volume),
        open_interest=int_or_zero(snapshot.open_interest),
        implied_volatility=zero_if_missing(snapshot.implied_volatility),
        break_even_price=zero_if_missing(snapshot.break_even_price),
        days_to_expiration=max(0, _raw_days_until(expiration, now)),
        score=score,
        last_updated=now,
    )


def transform_all(
    snapshots: Iterable[ContractSnapshot],
    *,
    underlying: str,
    trading_date: date,
    now: datetime,
    underlying_price: float | None = None,
) -> tuple[list[CanonicalOptionRow], int]:
    """Transform a run's snapshots.

    Returns (rows, skipped). A contract listed twice keeps its last occurrence,
    in the position of its first.
    """
    by_id: dict[str, CanonicalOptionRow] = {}
    skipped = 0
    for snapshot in snapshots:
        row = transform_contract(
            snapshot,
            underlying=underlying,
            trading_date=trading_date,
            now=now,
            underlying_price=underlying_price,
        )
        if row is None:
            skipped += 1
            continue
        by_id[row.contract_id] = row

    if skipped:
        LOGGER.info("skipped %s contracts (expired or missing ticker, expiration, strike or price)", skipped)
    return list(by_id.values()), skipped


def underlying_price_from_snapshots(snapshots: Iterable[ContractSnapshot]) -> float | None:
    for snapshot in snapshots:
        price = snapshot.underlying_asset.price
        if price is not None and price > 0:
            return price
    return None
