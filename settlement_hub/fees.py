"""Fee split for a single customer transaction.

The platform collects a surcharge on top of the restaurant's subtotal. From
that surcharge the payment gateway takes 2% of the subtotal plus 18% tax on
that charge, and 18% GST is owed on whatever margin remains.
"""
from settlement_hub.schemas import FeeBreakdown

GATEWAY_RATE = 0.02
GST_RATE = 0.18
GATEWAY_FEE_FACTOR = GATEWAY_RATE + GST_RATE * GATEWAY_RATE


def derive_fees(subtotal: float, collected_surcharge: float) -> FeeBreakdown:
    # Unrounded and unclamped: a surcharge below the gateway fee yields a
    # negative gst and earnings above the platform fee.
    gateway_fee = subtotal * GATEWAY_FEE_FACTOR
    gst = GST_RATE * (collected_surcharge - gateway_fee)
    net_platform_earnings = collected_surcharge - gst
    return FeeBreakdown(
        gross_amount=subtotal + collected_surcharge,
        restaurant_receivable=subtotal,
        platform_fee=collected_surcharge,
        gateway_fee=gateway_fee,
        gst=gst,
        net_platform_earnings=net_platform_earnings,
    )
