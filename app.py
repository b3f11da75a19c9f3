from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any

from fastapi import Body, Depends, FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import config
from errors import InvalidRequestError, IngestionError, WriteBatchError
from market_calendar import MarketWindowGate, build_holiday_calendar
from options_store import OptionsStore
from pipeline import OptionsIngestionPipeline

logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
LOGGER = logging.getLogger("options_ingest")

ACTIONS = (
    "health-check",
    "fetch-and-store",
    "fetch-only",
    "get-expiry-dates",
    "get-options-data",
    "get-underlying-price",
)


@lru_cache(maxsize=1)
def get_store() -> OptionsStore:
    return OptionsStore(config.duckdb_path)


@lru_cache(maxsize=1)
def get_gate() -> MarketWindowGate:
    return MarketWindowGate(build_holiday_calendar(config.holiday_calendar, config.market_holidays))


def get_pipeline(
    store: OptionsStore = Depends(get_store),
    gate: MarketWindowGate = Depends(get_gate),
) -> OptionsIngestionPipeline:
    return OptionsIngestionPipeline(config, gate=gate, store=store)


@asynccontextmanager
async def lifespan(_: FastAPI):
    for problem in config.validate():
        LOGGER.warning("config: %s", problem)
    if not config.has_api_key:
        LOGGER.warning("MASSIVE_API_KEY is not set; fetch actions will fail")
    yield
    if get_store.cache_info().currsize:
        get_store().close()
        get_store.cache_clear()


app = FastAPI(title="Options Snapshot Ingester", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_allow_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_date(value: str) -> date:
    return datetime.strptime(value, "%Y-%m-%d").date()


def _parse_expiry(raw: str | None) -> date | None:
    if raw is None or not raw.strip():
        return None
    try:
        return _to_date(raw.strip())
    except ValueError as e:
        raise InvalidRequestError(f"expiry must be YYYY-MM-DD (got {raw!r})") from e


def _error_response(status_code: int, error: str, exc: Exception, started: float) -> JSONResponse:
    content: dict[str, Any] = {
        "success": False,
        "error": error,
        "message": str(exc) or exc.__class__.__name__,
        "timestamp": _now_iso(),
        "elapsed_s": round(time.perf_counter() - started, 3),
    }
    if isinstance(exc, WriteBatchError):
        content["rows_written"] = exc.rows_written
        content["batch_index"] = exc.batch_index
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


@app.get("/health")
def health(gate: MarketWindowGate = Depends(get_gate)) -> dict[str, Any]:
    return {
        "ok": True,
        "symbol": config.underlying_symbol,
        "has_api_key": config.has_api_key,
        "market": gate.status().as_dict(),
        "holiday_calendar": config.holiday_calendar,
        "config_problems": config.validate(),
        "log_level": config.log_level,
    }


class ActionRequest(BaseModel):
    action: str | None = Field(None, examples=["fetch-and-store"])
    expiry: str | None = Field(None, description="YYYY-MM-DD", examples=["2025-01-17"])
    force_test: bool | None = Field(None, description="Run even when the market is closed")


async def _health_check(pipeline: OptionsIngestionPipeline) -> dict[str, Any]:
    return {
        "status": "healthy",
        "message": f"{pipeline.symbol} options snapshot ingester is ready",
        "market": pipeline.gate.status().as_dict(),
        "services": {
            "massiveAPI": "configured" if config.has_api_key else "not-configured",
            "store": "ready",
        },
    }


async def _get_expiry_dates(pipeline: OptionsIngestionPipeline) -> dict[str, Any]:
    dates = await asyncio.to_thread(pipeline.store.get_expiry_dates, pipeline.symbol)
    return {
        "dates": dates,
        "message": f"Found {len(dates)} expiry dates for {pipeline.symbol}",
    }


async def _get_options_data(pipeline: OptionsIngestionPipeline, expiry: date | None) -> dict[str, Any]:
    if expiry is None:
        raise InvalidRequestError("expiry is required for get-options-data")
    rows = await asyncio.to_thread(pipeline.store.get_options_data, pipeline.symbol, expiry)
    return {
        "rows": rows,
        "message": f"Retrieved {len(rows)} {pipeline.symbol} options contracts for expiry {expiry.isoformat()}",
        "data": {
            "totalRows": len(rows),
            "calls": sum(1 for r in rows if r.get("contract_type") == "call"),
            "puts": sum(1 for r in rows if r.get("contract_type") == "put"),
        },
    }


async def _get_underlying_price(pipeline: OptionsIngestionPipeline) -> dict[str, Any]:
    latest = await asyncio.to_thread(pipeline.store.get_underlying_price, pipeline.symbol)
    if latest is None:
        return {
            "underlying_price": None,
            "recorded_at": None,
            "message": f"No {pipeline.symbol} underlying price stored yet",
            "data": None,
        }
    return {
        "underlying_price": latest["price"],
        "recorded_at": latest["recorded_at"],
        "message": f"Latest {pipeline.symbol} underlying price",
        "data": latest,
    }


@app.api_route("/", methods=["GET", "POST"])
async def dispatch(
    action: str | None = Query(None),
    expiry: str | None = Query(None, description="YYYY-MM-DD"),
    force_test: bool | None = Query(None),
    body: ActionRequest | None = Body(None),
    pipeline: OptionsIngestionPipeline = Depends(get_pipeline),
) -> Any:
    started = time.perf_counter()

    # Query string wins over the JSON body.
    action = (action or (body.action if body else None) or "health-check").strip()
    raw_expiry = expiry if expiry is not None else (body.expiry if body else None)
    force = bool(force_test if force_test is not None else (body.force_test if body else False))

    try:
        if action not in ACTIONS:
            raise InvalidRequestError(f"Unknown action: {action}")
        expiry_date = _parse_expiry(raw_expiry)

        LOGGER.info("action=%s expiry=%s force_test=%s", action, expiry_date or "all", force)

        if action == "health-check":
            result = await _health_check(pipeline)
        elif action == "fetch-and-store":
            result = await pipeline.fetch_and_store(expiry_date, force=force)
        elif action == "fetch-only":
            result = await pipeline.fetch_only(expiry_date, force=force)
        elif action == "get-expiry-dates":
            result = await _get_expiry_dates(pipeline)
        elif action == "get-options-data":
            result = await _get_options_data(pipeline, expiry_date)
        else:
            result = await _get_underlying_price(pipeline)
    except InvalidRequestError as e:
        LOGGER.warning("rejected request action=%s: %s", action, e)
        return _error_response(400, "Invalid request", e, started)
    except IngestionError as e:
        LOGGER.exception("action %s failed", action)
        return _error_response(500, e.__class__.__name__, e, started)
    except Exception as e:
        LOGGER.exception("action %s failed", action)
        return _error_response(500, "Internal server error", e, started)

    market = pipeline.gate.status()
    if force:
        market_status = "testing"
    else:
        market_status = "open" if market.open else "closed"

    return {
        "success": True,
        "message": f"{pipeline.symbol} {action} completed successfully",
        "timestamp": _now_iso(),
        "symbol": pipeline.symbol,
        "action": action,
        "expiryDate": raw_expiry or None,
        "marketStatus": market_status,
        "testingMode": force,
        "result": result,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
