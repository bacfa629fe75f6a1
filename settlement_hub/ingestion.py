"""Normalization of loosely-typed upstream data.

Everything read from the remote store or posted by the order pipelines
passes through this module before it reaches the ledger. The contract:

* numbers may arrive as ``int``, ``float`` or numeric strings; anything
  unparsable, missing, non-finite or boolean counts as ``0.0``;
* timestamps may arrive as epoch milliseconds, ISO-8601 strings,
  ``datetime`` objects or ``{"seconds": ...}`` / ``{"_seconds": ...}``
  mappings; anything else falls back to the supplied default;
* derived fields (totals, statuses, fee splits) are always recomputed and
  never taken from the payload.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

from settlement_hub.fees import derive_fees
from settlement_hub.ledger import derive_status
from settlement_hub.schemas import (
    RESTAURANT_STATUSES,
    TRANSACTION_STATUSES,
    PaymentEntry,
    Settlement,
    SettlementPeriod,
    Transaction,
)

logger = logging.getLogger(__name__)


def parse_amount(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        return default
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return default
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return parse_timestamp(float(text), default)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return default
        return parse_timestamp(parsed, default)
    return default


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(round(value.timestamp() * 1000))


def parse_restaurant_status(value: Any) -> str:
    if isinstance(value, str):
        for status in RESTAURANT_STATUSES:
            if value.strip().lower() == status.lower():
                return status
    return "Off"


def _parse_transaction_status(value: Any) -> str:
    if value is None:
        return "Paid"
    if isinstance(value, str):
        for status in TRANSACTION_STATUSES:
            if value.strip().lower() == status.lower():
                return status
    return "Pending"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_payments(raw: Any, now: datetime) -> list[PaymentEntry]:
    """Drop invalid entries, dedupe by id and order by recorded time."""
    if not isinstance(raw, list):
        return []
    seen: set[str] = set()
    payments: list[PaymentEntry] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            continue
        amount = parse_amount(item.get("amount"))
        if amount <= 0:
            continue
        recorded_at = parse_timestamp(
            item.get("timestamp"), parse_timestamp(item.get("date"), now)
        )
        payment_id = _text(item.get("id")) or f"pay_legacy_{index}_{to_epoch_ms(recorded_at)}"
        if payment_id in seen:
            continue
        seen.add(payment_id)
        payments.append(
            PaymentEntry(
                id=payment_id,
                amount=amount,
                recorded_at=recorded_at,
                is_auto_payment=bool(item.get("isAutoPayment")),
            )
        )
    payments.sort(key=lambda p: p.recorded_at)
    return payments


def normalize_period(key: str, raw: Any, now: datetime) -> SettlementPeriod:
    data = raw if isinstance(raw, dict) else {}
    payments = normalize_payments(data.get("paymentHistory"), now)
    total_paid = sum(p.amount for p in payments)
    total_due = parse_amount(data.get("totalAmountDue"))
    default_for_month = (
        parse_amount(data["defaultAmountForMonth"])
        if data.get("defaultAmountForMonth") is not None
        else total_due
    )
    return SettlementPeriod(
        period=key,
        total_amount_due=total_due,
        default_amount_for_month=default_for_month,
        carry_over_credit=parse_amount(data.get("carryOverCredit")),
        overpayment_amount=max(0.0, total_paid - total_due),
        total_paid=total_paid,
        status=derive_status(total_paid, total_due),
        installments=len(payments),
        cycle_start_date=parse_timestamp(data.get("cycleStartDate"), now),
        payment_history=payments,
        settled_date=parse_timestamp(data.get("settledDate")),
    )


def normalize_settlement(
    document: Any,
    restaurant_id: str,
    restaurant_name: Optional[str] = None,
    version: int = 0,
    now: Optional[datetime] = None,
) -> Settlement:
    now = now or datetime.now(timezone.utc)
    data = document if isinstance(document, dict) else {}
    raw_periods = data.get("settlements")
    periods = {}
    if isinstance(raw_periods, dict):
        for key, raw in raw_periods.items():
            periods[str(key)] = normalize_period(str(key), raw, now)
    return Settlement(
        settlement_id=_text(data.get("settlementId")) or f"settlement_{restaurant_id}",
        restaurant_id=restaurant_id,
        restaurant_name=restaurant_name or _text(data.get("restaurantName")) or "",
        default_settlement_amount=parse_amount(data.get("defaultSettlementAmount")),
        default_settlement_start_date=parse_timestamp(data.get("defaultSettlementStartDate")),
        current_overpayment=max(0.0, parse_amount(data.get("currentOverpayment"))),
        periods=periods,
        created_at=parse_timestamp(data.get("createdAt"), now),
        last_updated=parse_timestamp(data.get("lastUpdated"), now),
        version=version,
    )


def dump_period(period: SettlementPeriod) -> dict:
    document = {
        "period": period.period,
        "totalAmountDue": period.total_amount_due,
        "defaultAmountForMonth": period.default_amount_for_month,
        "carryOverCredit": period.carry_over_credit,
        "overpaymentAmount": period.overpayment_amount,
        "totalPaid": period.total_paid,
        "status": period.status,
        "installments": period.installments,
        "cycleStartDate": to_epoch_ms(period.cycle_start_date),
        "paymentHistory": [
            {
                "id": p.id,
                "amount": p.amount,
                "date": to_epoch_ms(p.recorded_at),
                "timestamp": to_epoch_ms(p.recorded_at),
                "isAutoPayment": p.is_auto_payment,
            }
            for p in period.payment_history
        ],
    }
    if period.settled_date is not None:
        document["settledDate"] = to_epoch_ms(period.settled_date)
    return document


def dump_settlement(settlement: Settlement) -> dict:
    return {
        "settlementId": settlement.settlement_id,
        "restaurantId": settlement.restaurant_id,
        "restaurantName": settlement.restaurant_name,
        "defaultSettlementAmount": settlement.default_settlement_amount,
        "defaultSettlementStartDate": to_epoch_ms(settlement.default_settlement_start_date) or 0,
        "currentOverpayment": settlement.current_overpayment,
        "settlements": {key: dump_period(p) for key, p in settlement.periods.items()},
        "createdAt": to_epoch_ms(settlement.created_at),
        "lastUpdated": to_epoch_ms(settlement.last_updated),
    }


def normalize_transaction(
    raw: Any,
    restaurant_id: str,
    customer_id: Optional[str] = None,
    index: int = 0,
    now: Optional[datetime] = None,
) -> Transaction:
    now = now or datetime.now(timezone.utc)
    data = raw if isinstance(raw, dict) else {}
    subtotal = parse_amount(data.get("subtotal"))
    surcharge = parse_amount(data.get("taxes"))
    fees = derive_fees(subtotal, surcharge)
    order_id = _text(data.get("id"))
    created_at = parse_timestamp(data.get("createdAt"), parse_timestamp(data.get("paidAt"), now))
    return Transaction(
        id=order_id or f"{customer_id or restaurant_id}_{index}",
        restaurant_id=restaurant_id,
        order_id=order_id or f"order_{index}",
        customer_id=customer_id,
        payment_method=_text(data.get("paymentMethod")) or "UPI",
        online_pay_method=_text(data.get("OnlinePayMethod")),
        subtotal=subtotal,
        collected_surcharge=surcharge,
        status=_parse_transaction_status(data.get("paymentStatus")),
        created_at=created_at,
        reference_id=order_id or f"order_{index}",
        **fees.model_dump(),
    )
