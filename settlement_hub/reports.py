"""Read-only aggregates over derived transactions for the admin dashboard."""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from settlement_hub.config import settings
from settlement_hub.ingestion import parse_timestamp
from settlement_hub.schemas import (
    DashboardStats,
    EarningsByDate,
    PaymentMethodSplit,
    RestaurantProfile,
    RestaurantRevenueStats,
    RestaurantVolume,
    Transaction,
)

GROUP_BY_OPTIONS = ("restaurant", "date", "method")


def online_only(
    transactions: Iterable[Transaction],
    methods: Optional[Iterable[str]] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> list[Transaction]:
    allowed = set(methods if methods is not None else settings.online_payment_methods)
    selected = [t for t in transactions if t.payment_method in allowed]
    if date_from is not None:
        date_from = parse_timestamp(date_from)
        selected = [t for t in selected if t.created_at >= date_from]
    if date_to is not None:
        date_to = parse_timestamp(date_to)
        selected = [t for t in selected if t.created_at <= date_to]
    return selected


def dashboard_stats(
    restaurants: Iterable[RestaurantProfile], transactions: list[Transaction]
) -> DashboardStats:
    return DashboardStats(
        total_restaurants=len(list(restaurants)),
        total_transactions=len(transactions),
        total_gross_volume=sum(t.gross_amount for t in transactions),
        total_platform_earnings=sum(t.net_platform_earnings for t in transactions),
        total_gst_payable=sum(t.gst for t in transactions),
    )


def earnings_by_date(
    transactions: list[Transaction], tz_name: Optional[str] = None
) -> list[EarningsByDate]:
    tz = ZoneInfo(tz_name or settings.billing_timezone)
    buckets: dict = defaultdict(lambda: [0.0, 0])
    for txn in transactions:
        day = txn.created_at.astimezone(tz).date()
        buckets[day][0] += txn.net_platform_earnings
        buckets[day][1] += 1
    return [
        EarningsByDate(date=day.strftime("%b %d"), earnings=round(earnings), transactions=count)
        for day, (earnings, count) in sorted(buckets.items())
    ]


def payment_method_split(transactions: list[Transaction]) -> list[PaymentMethodSplit]:
    amounts: dict[str, float] = defaultdict(float)
    counts: dict[str, int] = defaultdict(int)
    for txn in transactions:
        method = txn.online_pay_method or txn.payment_method or "Unknown"
        amounts[method] += txn.gross_amount
        counts[method] += 1
    return [
        PaymentMethodSplit(method=method, count=counts[method], amount=round(amount))
        for method, amount in amounts.items()
    ]


def top_restaurants(
    restaurants: dict[str, RestaurantProfile], transactions: list[Transaction], limit: int = 10
) -> list[RestaurantVolume]:
    volume: dict[str, float] = defaultdict(float)
    for txn in transactions:
        volume[txn.restaurant_id] += txn.gross_amount
    ranked = sorted(volume.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [
        RestaurantVolume(
            restaurant_id=restaurant_id,
            restaurant_name=restaurants[restaurant_id].name
            if restaurant_id in restaurants
            else "Unknown",
            volume=round(amount),
        )
        for restaurant_id, amount in ranked
    ]


def restaurant_stats(transactions: list[Transaction]) -> RestaurantRevenueStats:
    return RestaurantRevenueStats(
        transaction_count=len(transactions),
        total_revenue=sum(t.gross_amount for t in transactions),
        restaurant_share=sum(t.restaurant_receivable for t in transactions),
        platform_fee=sum(t.platform_fee for t in transactions),
        gst_payable=sum(t.gst for t in transactions),
        gateway_fees=sum(t.gateway_fee for t in transactions),
        net_platform_earnings=sum(t.net_platform_earnings for t in transactions),
    )


def group_ledger(
    transactions: list[Transaction],
    restaurants: dict[str, RestaurantProfile],
    group_by: str = "restaurant",
    tz_name: Optional[str] = None,
) -> list[tuple[str, list[Transaction]]]:
    """Group transactions for the ledger view, newest first within each group.

    Date groups are ordered newest first; restaurant and method groups
    alphabetically.
    """
    if group_by not in GROUP_BY_OPTIONS:
        raise ValueError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")
    tz = ZoneInfo(tz_name or settings.billing_timezone)
    groups: dict = defaultdict(list)
    for txn in transactions:
        if group_by == "restaurant":
            profile = restaurants.get(txn.restaurant_id)
            key = profile.name if profile else "Unknown"
        elif group_by == "date":
            key = txn.created_at.astimezone(tz).date()
        else:
            key = txn.online_pay_method or "Unknown"
        groups[key].append(txn)
    for rows in groups.values():
        rows.sort(key=lambda t: t.created_at, reverse=True)
    if group_by == "date":
        return [
            (day.strftime("%d %b %Y"), groups[day]) for day in sorted(groups, reverse=True)
        ]
    return [(key, groups[key]) for key in sorted(groups)]
