from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from settlement_hub import ledger, reports
from settlement_hub.config import Settings, settings
from settlement_hub.db import SessionLocal
from settlement_hub.logging_config import configure_logging
from settlement_hub.remote import SettlementRemote
from settlement_hub.rollover import RolloverScheduler
from settlement_hub.schemas import Outcome, RestaurantProfile, RestaurantStatus
from settlement_hub.store import ReconciliationStore

logger = logging.getLogger(__name__)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _paginate(rows: list, limit: int, cursor: Optional[int]) -> tuple[list, Optional[int]]:
    offset = cursor or 0
    page = rows[offset : offset + limit + 1]
    next_cursor = None
    if len(page) > limit:
        next_cursor = offset + limit
        page = page[:limit]
    return page, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _declined(outcome: Outcome, status_code: int = 409) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "data": {"accepted": False, "period": outcome.period},
            "meta": _meta(warnings=[outcome.reason or "declined"]),
        },
    )


def _restaurant_data(profile: RestaurantProfile) -> dict:
    return {
        "restaurant_id": profile.id,
        "name": profile.name,
        "city": profile.city,
        "status": profile.status,
        "inactive_since": profile.inactive_since.isoformat() if profile.inactive_since else None,
    }


def get_store(request: Request) -> ReconciliationStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _require_restaurant(store: ReconciliationStore, restaurant_id: str) -> RestaurantProfile:
    profile = store.get_restaurant(restaurant_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="restaurant not found")
    return profile


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: Settings = app.state.settings
    configure_logging(config.log_level)
    logger.info("Starting settlement hub...")
    remote = SettlementRemote(app.state.session_factory, config.remote_poll_interval_seconds)
    store = ReconciliationStore(remote, tz_name=config.billing_timezone)
    scheduler = RolloverScheduler(store, config.rollover_interval_seconds)
    await store.load()
    await store.flush()
    await remote.start()
    await scheduler.start()
    app.state.store = store
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        logger.info("Shutting down settlement hub...")
        await scheduler.stop()
        await remote.stop()
        await store.close()


app = FastAPI(title="Settlement Hub", lifespan=lifespan)
app.state.settings = settings
app.state.session_factory = SessionLocal


class RestaurantCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"id": "rest_001", "name": "Savour Foods", "city": "Pune", "status": "Active"}
        }
    }
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    city: Optional[str] = None
    status: RestaurantStatus = "Active"


class RestaurantStatusUpdate(BaseModel):
    status: RestaurantStatus


class AmountInput(BaseModel):
    model_config = {"json_schema_extra": {"example": {"amount": 1000.0}}}
    amount: float


class OrderAppendRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer_id": "9876543210",
                "orders": [
                    {
                        "id": "ORD-1001",
                        "paymentMethod": "online",
                        "OnlinePayMethod": "UPI",
                        "subtotal": "1000",
                        "taxes": "50",
                        "paymentStatus": "Paid",
                        "createdAt": "2026-02-14T12:30:00+05:30",
                    }
                ],
            }
        }
    }
    customer_id: Optional[str] = None
    orders: list[dict]


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.post("/api/v1/restaurants", tags=["Restaurants"])
async def create_restaurant(
    payload: RestaurantCreate, store: ReconciliationStore = Depends(get_store)
) -> dict:
    profile = RestaurantProfile(
        id=payload.id,
        name=payload.name,
        city=payload.city,
        status=payload.status,
        inactive_since=_now() if payload.status == "Inactive" else None,
    )
    if not await store.add_restaurant(profile):
        raise HTTPException(status_code=409, detail="restaurant already exists")
    await store.flush()
    return {"data": _restaurant_data(profile), "meta": _meta()}


@app.get("/api/v1/restaurants", tags=["Restaurants"])
def list_restaurants(
    status: Optional[RestaurantStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None, ge=0),
    store: ReconciliationStore = Depends(get_store),
) -> dict:
    rows = sorted(store.restaurants.values(), key=lambda r: r.id)
    if status is not None:
        rows = [r for r in rows if r.status == status]
    page, next_cursor = _paginate(rows, limit, cursor)
    return {
        "data": [_restaurant_data(r) for r in page],
        "meta": _list_meta(limit, cursor, next_cursor),
    }


@app.get("/api/v1/restaurants/{restaurant_id}", tags=["Restaurants"])
def get_restaurant(restaurant_id: str, store: ReconciliationStore = Depends(get_store)) -> dict:
    profile = _require_restaurant(store, restaurant_id)
    return {"data": _restaurant_data(profile), "meta": _meta()}


@app.post("/api/v1/restaurants/{restaurant_id}/status", tags=["Restaurants"])
async def set_restaurant_status(
    restaurant_id: str,
    payload: RestaurantStatusUpdate,
    store: ReconciliationStore = Depends(get_store),
):
    _require_restaurant(store, restaurant_id)
    outcome = store.set_restaurant_status(restaurant_id, payload.status)
    if not outcome.accepted:
        return _declined(outcome)
    await store.flush()
    return {"data": _restaurant_data(store.get_restaurant(restaurant_id)), "meta": _meta()}


@app.get("/api/v1/restaurants/{restaurant_id}/settlement", tags=["Settlements"])
async def get_settlement(
    restaurant_id: str, store: ReconciliationStore = Depends(get_store)
) -> dict:
    _require_restaurant(store, restaurant_id)
    settlement = store.get_settlement(restaurant_id)
    if settlement is None:
        settlement = await store.ensure_settlement(restaurant_id)
        await store.flush()
    if settlement is None:
        raise HTTPException(status_code=404, detail="settlement not found")
    now = _now()
    current_key = ledger.period_key(now, store.tz_name)
    current = settlement.periods.get(current_key)
    return {
        "data": {
            "settlement": settlement.model_dump(mode="json"),
            "totals": ledger.settlement_totals(settlement).model_dump(),
            "current_period": current_key,
            "days_remaining": ledger.days_remaining(current, now) if current else None,
        },
        "meta": _meta(),
    }


@app.post("/api/v1/restaurants/{restaurant_id}/settlement/default-amount", tags=["Settlements"])
async def set_default_amount(
    restaurant_id: str, payload: AmountInput, store: ReconciliationStore = Depends(get_store)
):
    _require_restaurant(store, restaurant_id)
    outcome = store.set_default_amount(restaurant_id, payload.amount)
    if not outcome.accepted:
        return _declined(outcome)
    await store.flush()
    settlement = store.get_settlement(restaurant_id)
    return {
        "data": {
            "default_settlement_amount": settlement.default_settlement_amount,
            "default_settlement_start_date": settlement.default_settlement_start_date.isoformat(),
            "period": outcome.period,
        },
        "meta": _meta(),
    }


@app.post("/api/v1/restaurants/{restaurant_id}/settlement/payments", tags=["Settlements"])
async def add_payment(
    restaurant_id: str, payload: AmountInput, store: ReconciliationStore = Depends(get_store)
):
    _require_restaurant(store, restaurant_id)
    outcome = store.add_payment(restaurant_id, payload.amount)
    if not outcome.accepted:
        return _declined(outcome)
    await store.flush()
    settlement = store.get_settlement(restaurant_id)
    period = settlement.periods.get(outcome.period)
    return {
        "data": {
            "payment": outcome.payment.model_dump(mode="json"),
            "period": period.model_dump(mode="json") if period else None,
            "current_overpayment": settlement.current_overpayment,
        },
        "meta": _meta(),
    }


@app.post("/api/v1/restaurants/{restaurant_id}/settlement:rollover", tags=["Settlements"])
async def rollover(restaurant_id: str, store: ReconciliationStore = Depends(get_store)) -> dict:
    _require_restaurant(store, restaurant_id)
    outcome = store.rollover(restaurant_id)
    await store.flush()
    return {
        "data": {"opened": outcome.accepted, "period": outcome.period},
        "meta": _meta(warnings=[outcome.reason] if outcome.reason else None),
    }


@app.post("/api/v1/restaurants/{restaurant_id}/orders:append", tags=["Transactions"])
async def append_orders(
    restaurant_id: str,
    payload: OrderAppendRequest,
    store: ReconciliationStore = Depends(get_store),
) -> dict:
    _require_restaurant(store, restaurant_id)
    result = store.ingest_orders(restaurant_id, payload.orders, payload.customer_id)
    await store.flush()
    return {
        "data": {
            "accepted": True,
            "inserted": len(result["accepted"]),
            "deduped": result["duplicates"],
            "rejected": result["rejected"],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/restaurants/{restaurant_id}/stats", tags=["Reports"])
def get_restaurant_stats(
    restaurant_id: str,
    store: ReconciliationStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> dict:
    _require_restaurant(store, restaurant_id)
    transactions = reports.online_only(
        store.transactions_for(restaurant_id), config.online_payment_methods
    )
    return {"data": reports.restaurant_stats(transactions).model_dump(), "meta": _meta()}


@app.get("/api/v1/transactions", tags=["Transactions"])
def list_transactions(
    restaurant_id: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None, ge=0),
    store: ReconciliationStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> dict:
    rows = (
        store.transactions_for(restaurant_id)
        if restaurant_id is not None
        else list(store.transactions.values())
    )
    rows = reports.online_only(
        rows, config.online_payment_methods, date_from, date_to
    )
    rows.sort(key=lambda t: t.created_at, reverse=True)
    page, next_cursor = _paginate(rows, limit, cursor)
    return {
        "data": [t.model_dump(mode="json") for t in page],
        "meta": _list_meta(limit, cursor, next_cursor),
    }


@app.get("/api/v1/dashboard", tags=["Reports"])
def get_dashboard(
    store: ReconciliationStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> dict:
    transactions = reports.online_only(
        store.transactions.values(), config.online_payment_methods
    )
    return {
        "data": {
            "stats": reports.dashboard_stats(store.restaurants.values(), transactions).model_dump(),
            "earnings_by_date": [
                e.model_dump() for e in reports.earnings_by_date(transactions, store.tz_name)
            ],
            "payment_method_split": [
                s.model_dump() for s in reports.payment_method_split(transactions)
            ],
            "top_restaurants": [
                r.model_dump() for r in reports.top_restaurants(store.restaurants, transactions)
            ],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/ledger", tags=["Reports"])
def get_ledger(
    group_by: str = Query(default="restaurant"),
    store: ReconciliationStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> dict:
    if group_by not in reports.GROUP_BY_OPTIONS:
        raise HTTPException(status_code=400, detail="invalid group_by")
    transactions = reports.online_only(
        store.transactions.values(), config.online_payment_methods
    )
    groups = reports.group_ledger(transactions, store.restaurants, group_by, store.tz_name)
    return {
        "data": [
            {
                "group": key,
                "total_net_platform_earnings": sum(t.net_platform_earnings for t in rows),
                "transactions": [t.model_dump(mode="json") for t in rows],
            }
            for key, rows in groups
        ],
        "meta": _meta(),
    }
