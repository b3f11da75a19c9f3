from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

from market_calendar import MarketStatus
from snapshot_models import ContractSnapshot, FetchResult

# Monday 2025-03-10, 10:00 in New York (EDT, UTC-4).
MONDAY_OPEN_UTC = datetime(2025, 3, 10, 14, 0, tzinfo=timezone.utc)
TRADING_DATE = date(2025, 3, 10)


def contract_payload(
    ticker: str = "O:MSTR250417C00100000",
    *,
    contract_type: str = "call",
    strike: Any = 100.0,
    expiration: Any = "2025-04-17",
    close: Any = 1.52,
    last_trade: Any = None,
    greeks: dict[str, Any] | None = None,
    quote: dict[str, Any] | None = None,
    underlying_price: Any = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "details": {
            "ticker": ticker,
            "contract_type": contract_type,
            "exercise_style": "american",
            "expiration_date": expiration,
            "strike_price": strike,
            "shares_per_contract": 100,
        },
        "greeks": greeks if greeks is not None else {"delta": 0.5, "gamma": 0.1, "theta": -0.05, "vega": 0.2},
        "last_quote": quote if quote is not None else {"bid": 1.5, "ask": 1.6, "bid_size": 10, "ask_size": 12},
        "day": {"open": 1.4, "high": 1.6, "low": 1.3, "close": close, "volume": 250, "vwap": 1.48},
        "open_interest": 1200,
        "implied_volatility": 0.95,
        "break_even_price": 101.52,
    }
    if last_trade is not None:
        payload["last_trade"] = {"price": last_trade, "size": 3}
    if underlying_price is not None:
        payload["underlying_asset"] = {"ticker": "MSTR", "price": underlying_price}
    return payload


def snapshot(**kwargs: Any) -> ContractSnapshot:
    return ContractSnapshot.model_validate(contract_payload(**kwargs))


def page(results: list[dict[str, Any]], next_url: str | None = None, status: str = "OK") -> dict[str, Any]:
    body: dict[str, Any] = {"status": status, "request_id": "req-1", "results": results}
    if next_url:
        body["next_url"] = next_url
    return body


class FakeResponse:
    def __init__(self, status: int, body: Any) -> None:
        self.status = status
        self._body = body

    async def json(self) -> Any:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def text(self) -> str:
        return str(self._body)

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class FakeSession:
    """Replays queued (status, body) responses and records every request."""

    def __init__(self, responses: list[tuple[int, Any]]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, headers: dict[str, str] | None = None, params: dict[str, Any] | None = None) -> FakeResponse:
        self.calls.append({"url": url, "headers": headers, "params": params})
        if not self._responses:
            raise AssertionError(f"unexpected request to {url}")
        status, body = self._responses.pop(0)
        if isinstance(body, BaseException) and status == 0:
            raise body
        return FakeResponse(status, body)


class FakeFetcher:
    def __init__(self, contracts: list[ContractSnapshot], *, pages: int = 1, close: float | None = None) -> None:
        self.contracts = contracts
        self.pages = pages
        self.close = close
        self.fetch_calls = 0
        self.close_calls = 0

    async def fetch_all(self, underlying: str) -> FetchResult:
        self.fetch_calls += 1
        return FetchResult(underlying=underlying, contracts=list(self.contracts), pages=self.pages)

    async def fetch_underlying_close(self, underlying: str, day: date) -> float | None:
        self.close_calls += 1
        return self.close


def fetcher_opener(fetcher: FakeFetcher):
    @asynccontextmanager
    async def _open():
        yield fetcher

    return _open


class FixedGate:
    def __init__(self, open_: bool, reason: str | None = None) -> None:
        self.open = open_
        self.reason = reason or ("regular session" if open_ else "weekend")
        self.calls = 0

    def status(self, now: datetime | None = None) -> MarketStatus:
        self.calls += 1
        return MarketStatus(open=self.open, reason=self.reason, trading_date=TRADING_DATE)

    def is_open(self, now: datetime | None = None) -> bool:
        return self.open


async def no_sleep(_: float) -> None:
    return None
