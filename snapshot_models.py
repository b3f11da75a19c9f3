"""Typed views of the Massive `/v3/snapshot/options/{underlying}` payload and
the rows this service persists."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coerce import date_or_none, float_or_none


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _lenient_numbers(*names: str) -> Any:
    # Garbage in a numeric slot parses as "absent" instead of failing the page.
    return field_validator(*names, mode="before")(float_or_none)


class ContractDetails(_Payload):
    ticker: str | None = None
    contract_type: str | None = None
    exercise_style: str | None = None
    expiration_date: date | None = None
    strike_price: float | None = None
    shares_per_contract: float | None = None

    coerce_numbers = _lenient_numbers("strike_price", "shares_per_contract")

    @field_validator("expiration_date", mode="before")
    @classmethod
    def _parse_expiration(cls, v: Any) -> date | None:
        return date_or_none(v)

    @field_validator("contract_type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> str | None:
        if v is None:
            return None
        ctype = str(v).strip().lower()
        if ctype in ("call", "c"):
            return "call"
        if ctype in ("put", "p"):
            return "put"
        return ctype or None


class Greeks(_Payload):
    delta: float | None = None
    gamma: float | None = None
    theta: float | None = None
    vega: float | None = None
    rho: float | None = None

    coerce_numbers = _lenient_numbers("delta", "gamma", "theta", "vega", "rho")


class LastQuote(_Payload):
    bid: float | None = None
    ask: float | None = None
    bid_size: float | None = None
    ask_size: float | None = None
    midpoint: float | None = None
    last_updated: float | None = None

    coerce_numbers = _lenient_numbers("bid", "ask", "bid_size", "ask_size", "midpoint", "last_updated")


class LastTrade(_Payload):
    price: float | None = None
    size: float | None = None
    exchange: float | None = None
    sip_timestamp: float | None = None

    coerce_numbers = _lenient_numbers("price", "size", "exchange", "sip_timestamp")


class DayAggregate(_Payload):
    open: float | None = None
    high: float | None = None
    low: float | None = None
    close: float | None = None
    volume: float | None = None
    vwap: float | None = None
    previous_close: float | None = None
    change: float | None = None
    change_percent: float | None = None
    last_updated: float | None = None

    coerce_numbers = _lenient_numbers(
        "open", "high", "low", "close", "volume", "vwap", "previous_close", "change", "change_percent", "last_updated"
    )


class UnderlyingAsset(_Payload):
    ticker: str | None = None
    price: float | None = None
    last_updated: float | None = None

    coerce_numbers = _lenient_numbers("price", "last_updated")


class ContractSnapshot(_Payload):
    """One entry of a snapshot page.

    Every field is optional here; which ones a persisted row cannot do without
    is decided by the transformer.
    """

    details: ContractDetails = Field(default_factory=ContractDetails)
    greeks: Greeks = Field(default_factory=Greeks)
    last_quote: LastQuote = Field(default_factory=LastQuote)
    last_trade: LastTrade = Field(default_factory=LastTrade)
    day: DayAggregate = Field(default_factory=DayAggregate)
    underlying_asset: UnderlyingAsset = Field(default_factory=UnderlyingAsset)
    open_interest: float | None = None
    implied_volatility: float | None = None
    break_even_price: float | None = None

    coerce_numbers = _lenient_numbers("open_interest", "implied_volatility", "break_even_price")

    @field_validator("details", "greeks", "last_quote", "last_trade", "day", "underlying_asset", mode="before")
    @classmethod
    def _none_section_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def contract_id(self) -> str | None:
        return self.details.ticker

    @property
    def contract_type(self) -> str | None:
        return self.details.contract_type

    @property
    def representative_price(self) -> float | None:
        """Closing price of the session, else the last trade price."""
        if self.day.close is not None:
            return self.day.close
        return self.last_trade.price


class FetchPage(_Payload):
    status: str | None = None
    request_id: str | None = None
    next_url: str | None = None
    results: list[ContractSnapshot] = Field(default_factory=list)

    @field_validator("results", mode="before")
    @classmethod
    def _none_results_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


@dataclass
class FetchResult:
    underlying: str
    contracts: list[ContractSnapshot]
    pages: int
    ceiling_hit: bool = False


@dataclass
class CanonicalOptionRow:
    # Identity: immutable once the row exists
    trading_date: date
    contract_id: str
    underlying: str
    contract_type: str
    strike_price: float
    expiration_date: date
    exercise_style: str | None
    shares_per_contract: int
    created_at: datetime

    # Replaced on every overwrite
    underlying_price: float | None
    delta: float
    gamma: float
    theta: float
    vega: float
    rho: float
    bid: float
    ask: float
    bid_size: int
    ask_size: int
    mid_price: float
    spread: float
    last_price: float
    last_size: int
    day_open: float
    day_high: float
    day_low: float
    day_close: float
    day_vwap: float
    volume: int
    open_interest: int
    implied_volatility: float
    break_even_price: float
    days_to_expiration: int
    score: float
    last_updated: datetime

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


IDENTITY_COLUMNS: tuple[str, ...] = (
    "trading_date",
    "contract_id",
    "underlying",
    "contract_type",
    "strike_price",
    "expiration_date",
    "exercise_style",
    "shares_per_contract",
    "created_at",
)

ROW_COLUMNS: tuple[str, ...] = tuple(f.name for f in fields(CanonicalOptionRow))

MUTABLE_COLUMNS: tuple[str, ...] = tuple(c for c in ROW_COLUMNS if c not in IDENTITY_COLUMNS)
