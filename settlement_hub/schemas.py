from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RestaurantStatus = Literal["Active", "Inactive", "Suspended", "Off"]
TransactionStatus = Literal["Paid", "Failed", "Refunded", "Pending"]
PeriodStatus = Literal["Pending", "Processing", "Paid"]

RESTAURANT_STATUSES: tuple[str, ...] = ("Active", "Inactive", "Suspended", "Off")
TRANSACTION_STATUSES: tuple[str, ...] = ("Paid", "Failed", "Refunded", "Pending")


class RestaurantProfile(BaseModel):
    id: str
    name: str
    city: Optional[str] = None
    status: RestaurantStatus = "Off"
    inactive_since: Optional[datetime] = None


class FeeBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    gross_amount: float
    restaurant_receivable: float
    platform_fee: float
    gateway_fee: float
    gst: float
    net_platform_earnings: float


class Transaction(BaseModel):
    """One customer payment event with its derived fee split.

    The fee fields are computed once at ingestion from ``subtotal`` and
    ``collected_surcharge`` and never change afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    restaurant_id: str
    order_id: str
    customer_id: Optional[str] = None
    payment_method: str
    online_pay_method: Optional[str] = None
    subtotal: float
    collected_surcharge: float
    gross_amount: float
    restaurant_receivable: float
    platform_fee: float
    gateway_fee: float
    gst: float
    net_platform_earnings: float
    status: TransactionStatus = "Paid"
    created_at: datetime
    reference_id: str


class PaymentEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    amount: float = Field(gt=0)
    recorded_at: datetime
    is_auto_payment: bool = False


class SettlementPeriod(BaseModel):
    period: str
    total_amount_due: float = 0.0
    default_amount_for_month: float = 0.0
    carry_over_credit: float = 0.0
    overpayment_amount: float = 0.0
    total_paid: float = 0.0
    status: PeriodStatus = "Pending"
    installments: int = 0
    cycle_start_date: datetime
    payment_history: list[PaymentEntry] = Field(default_factory=list)
    settled_date: Optional[datetime] = None


class Settlement(BaseModel):
    settlement_id: str
    restaurant_id: str
    restaurant_name: str = ""
    default_settlement_amount: float = 0.0
    default_settlement_start_date: Optional[datetime] = None
    current_overpayment: float = 0.0
    periods: dict[str, SettlementPeriod] = Field(default_factory=dict)
    created_at: datetime
    last_updated: datetime
    # remote revision this projection was built from
    version: int = 0


class Outcome(BaseModel):
    """Result of a ledger or rollover operation.

    Declined operations are routine (UI retries, races between admin
    sessions) so they are reported here instead of raised.
    """

    accepted: bool
    reason: Optional[str] = None
    period: Optional[str] = None
    payment: Optional[PaymentEntry] = None

    @classmethod
    def declined(cls, reason: str, period: Optional[str] = None) -> "Outcome":
        return cls(accepted=False, reason=reason, period=period)


class PeriodTotals(BaseModel):
    period: str
    total_due: float
    total_paid: float
    pending: float
    status: PeriodStatus


class SettlementTotals(BaseModel):
    restaurant_id: str
    total_due: float
    total_paid: float
    total_pending: float
    overpayment_credit: float
    periods: list[PeriodTotals]


class DashboardStats(BaseModel):
    total_restaurants: int
    total_transactions: int
    total_gross_volume: float
    total_platform_earnings: float
    total_gst_payable: float


class EarningsByDate(BaseModel):
    date: str
    earnings: int
    transactions: int


class PaymentMethodSplit(BaseModel):
    method: str
    count: int
    amount: int


class RestaurantVolume(BaseModel):
    restaurant_id: str
    restaurant_name: str
    volume: int


class RestaurantRevenueStats(BaseModel):
    transaction_count: int
    total_revenue: float
    restaurant_share: float
    platform_fee: float
    gst_payable: float
    gateway_fees: float
    net_platform_earnings: float
