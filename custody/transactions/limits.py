"""KYC tier spending limits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping, Optional

from custody.errors import LimitExceeded
from custody.infra.store import CustodyStore

SECOND_FACTOR_THRESHOLD_USD = Decimal("100")


@dataclass(frozen=True)
class TierLimits:
    per_transaction_usd: Decimal
    daily_usd: Decimal
    monthly_usd: Decimal
    requires_second_factor: bool


KYC_LIMITS: Mapping[int, TierLimits] = {
    0: TierLimits(Decimal("50"), Decimal("100"), Decimal("100"), False),
    1: TierLimits(Decimal("500"), Decimal("1000"), Decimal("10000"), True),
    2: TierLimits(Decimal("5000"), Decimal("10000"), Decimal("100000"), True),
}


@dataclass(frozen=True)
class LimitCheck:
    tier: int
    limits: TierLimits
    spent_today_usd: Decimal
    spent_this_month_usd: Decimal
    requires_second_factor: bool

    @property
    def remaining_today_usd(self) -> Decimal:
        return max(Decimal(0), self.limits.daily_usd - self.spent_today_usd)

    @property
    def remaining_this_month_usd(self) -> Decimal:
        return max(Decimal(0), self.limits.monthly_usd - self.spent_this_month_usd)


def limits_for_tier(tier: int) -> TierLimits:
    return KYC_LIMITS.get(tier, KYC_LIMITS[0])


class LimitPolicy:
    """Evaluate per-transaction, daily and monthly limits in USD.

    Usage counts outgoing sends created since the start of the UTC day or
    month that did not end ``failed`` or ``cancelled``.
    """

    def __init__(self, store: CustodyStore) -> None:
        self._store = store

    def usage(self, user_id: str, *, now: Optional[datetime] = None) -> LimitCheck:
        now = now or datetime.now(tz=timezone.utc)
        user = self._store.get_user(user_id)
        tier = user.kyc_tier if user is not None else 0
        limits = limits_for_tier(tier)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        spent_today = sum(self._store.outgoing_amounts_since(user_id, day_start), Decimal(0))
        spent_month = sum(self._store.outgoing_amounts_since(user_id, month_start), Decimal(0))
        return LimitCheck(tier, limits, spent_today, spent_month, limits.requires_second_factor)

    def check(self, user_id: str, amount_usd: Decimal, *, now: Optional[datetime] = None) -> LimitCheck:
        """Raise :class:`LimitExceeded` if ``amount_usd`` breaches any limit."""

        usage = self.usage(user_id, now=now)
        limits = usage.limits
        if amount_usd > limits.per_transaction_usd:
            raise LimitExceeded(
                f"Transaction amount exceeds limit of ${limits.per_transaction_usd}. "
                "Upgrade KYC tier for higher limits."
            )
        if usage.spent_today_usd + amount_usd > limits.daily_usd:
            raise LimitExceeded(
                f"Daily limit of ${limits.daily_usd} would be exceeded. "
                f"Remaining: ${usage.remaining_today_usd:.2f}"
            )
        if usage.spent_this_month_usd + amount_usd > limits.monthly_usd:
            raise LimitExceeded(
                f"Monthly limit of ${limits.monthly_usd} would be exceeded. "
                f"Remaining: ${usage.remaining_this_month_usd:.2f}"
            )
        needs_second_factor = limits.requires_second_factor or amount_usd > SECOND_FACTOR_THRESHOLD_USD
        return LimitCheck(
            usage.tier, limits, usage.spent_today_usd, usage.spent_this_month_usd, needs_second_factor
        )
