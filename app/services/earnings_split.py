"""Platform fee / GST / provider net split for charges and refunds.

All amounts are integer minor units. The split never loses a unit: whatever
the fee and GST steps do not claim ends up in the provider's net.
"""

from collections import namedtuple

BPS_DENOMINATOR = 10000

EarningsSplit = namedtuple("EarningsSplit", ["platform_fee_amount", "gst_amount", "net_amount"])


class GstRule(namedtuple("GstRule", ["rate_bps", "inclusive"])):
    """Jurisdiction GST rule applied to the post-fee base.

    ``inclusive`` means the base already contains GST (NZ style pricing), so the
    tax portion is ``base * rate / (1 + rate)``. Otherwise tax is charged on top
    of the base: ``base * rate``. Both round down.
    """

    __slots__ = ()

    def tax_on(self, base):
        if base <= 0 or self.rate_bps <= 0:
            return 0
        if self.inclusive:
            gst = (base * self.rate_bps) // (BPS_DENOMINATOR + self.rate_bps)
        else:
            gst = (base * self.rate_bps) // BPS_DENOMINATOR
        return min(gst, base)


NO_GST = GstRule(rate_bps=0, inclusive=True)


def _ceil_div(numerator, denominator):
    return -(-numerator // denominator)


def platform_fee(amount, platform_fee_bps):
    return _ceil_div(amount * platform_fee_bps, BPS_DENOMINATOR)


def split(amount, platform_fee_bps, charges_gst, gst_rule=NO_GST):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValueError("amount must be a non-negative integer of minor units")
    if isinstance(platform_fee_bps, bool) or not isinstance(platform_fee_bps, int):
        raise ValueError("platform_fee_bps must be an integer")
    if not 0 <= platform_fee_bps <= BPS_DENOMINATOR:
        raise ValueError("platform_fee_bps must be between 0 and 10000")

    fee = platform_fee(amount, platform_fee_bps)
    gst = gst_rule.tax_on(amount - fee) if charges_gst else 0
    return EarningsSplit(
        platform_fee_amount=fee,
        gst_amount=gst,
        net_amount=amount - fee - gst,
    )
