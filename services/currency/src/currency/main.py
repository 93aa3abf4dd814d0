from __future__ import annotations

import json
import os
import tempfile
import time
import uuid
from contextlib import asynccontextmanager

from common.utils import now_utc_iso
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from currency.service import (
    LOGGER,
    SUPPORTED_CURRENCIES,
    CurrencyService,
    RateUnavailableError,
    normalize_code,
)
from currency.storage import KeyValueStore, SqliteKeyValueStore

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "jobboard", "currency.sqlite3")


class SupportedCurrency(BaseModel):
    code: str
    name: str
    symbol: str


class RatesResponse(BaseModel):
    base: str
    generated_at: str
    rates: dict[str, float]


class ConversionResponse(BaseModel):
    amount: float
    from_currency: str
    to_currency: str
    converted: float
    formatted: str


def create_app(
    *,
    database_path: str | None = None,
    store: KeyValueStore | None = None,
    api_key: str | None = None,
) -> FastAPI:
    owned_store: SqliteKeyValueStore | None = None
    if store is None:
        resolved_path = database_path or os.getenv("CURRENCY_DB_PATH", DEFAULT_DB_PATH)
        owned_store = SqliteKeyValueStore(database_path=resolved_path)
        store = owned_store

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owned_store is not None:
            await run_in_threadpool(owned_store.connect)
        app.state.currency_service = CurrencyService(store, api_key=api_key)
        try:
            yield
        finally:
            if owned_store is not None:
                await run_in_threadpool(owned_store.close)

    app = FastAPI(title="Job Board Currency", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                }
            )
        )
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "currency"}

    @app.get("/currencies", response_model=list[SupportedCurrency])
    async def list_currencies() -> list[SupportedCurrency]:
        return [
            SupportedCurrency(
                code=code,
                name=name,
                symbol=CurrencyService.get_currency_symbol(code),
            )
            for code, name in SUPPORTED_CURRENCIES
        ]

    @app.get("/rates/{base}", response_model=RatesResponse)
    async def get_rates(base: str, request: Request) -> RatesResponse:
        service: CurrencyService = request.app.state.currency_service
        rates = await service.get_rates(base)
        return RatesResponse(base=normalize_code(base), generated_at=now_utc_iso(), rates=rates)

    @app.get("/convert", response_model=ConversionResponse)
    async def convert(
        request: Request,
        amount: float = Query(..., allow_inf_nan=False),
        from_currency: str = Query(..., min_length=3, max_length=3),
        to_currency: str = Query(..., min_length=3, max_length=3),
    ) -> ConversionResponse:
        service: CurrencyService = request.app.state.currency_service
        try:
            converted = await service.convert_currency(amount, from_currency, to_currency)
        except RateUnavailableError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

        target = normalize_code(to_currency)
        return ConversionResponse(
            amount=amount,
            from_currency=normalize_code(from_currency),
            to_currency=target,
            converted=converted,
            formatted=CurrencyService.format_currency(converted, target),
        )

    return app


app = create_app()
