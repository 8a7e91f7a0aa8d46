"""
Coupon usage commit.

Runs once per confirmed order, never during calculation or simulation.
Idempotent on (coupon, order); concurrent orders each take one use through
an increment that only the usage limit can refuse.
"""

from typing import Optional
from datetime import datetime

from shared.errors import ConcurrencyConflict, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..rules.models import normalize_coupon_code, utcnow
from ..rules.repository import RedemptionOutcome, RuleRepository
from .discounts import CouponValidator
from .models import CouponCommitResponse


class CouponCommitService:
    """Consumes one coupon use for a confirmed order."""

    def __init__(self, repository: RuleRepository, max_attempts: int = 3,
                 metrics: Optional[MetricsCollector] = None):
        self.repository = repository
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.logger = get_logger("offers.coupon_commit")

    def _record(self, status: str) -> None:
        if self.metrics:
            self.metrics.record_coupon_commit(status)

    async def commit(self, organization_id: str, coupon_code: str, order_id: str,
                     now: Optional[datetime] = None) -> CouponCommitResponse:
        code = normalize_coupon_code(coupon_code)
        now = now or utcnow()

        for attempt in range(1, self.max_attempts + 1):
            coupon = await self.repository.get_coupon(organization_id, code)
            if coupon is not None and await self.repository.has_redemption(coupon.id, order_id):
                self._record("duplicate")
                return CouponCommitResponse(coupon_code=code, order_id=order_id, used_count=coupon.used_count,
                                            usage_limit=coupon.usage_limit, already_committed=True)

            error = CouponValidator.availability_error(coupon, code, organization_id, now)
            if error is not None:
                if coupon is not None and coupon.exhausted:
                    self._record("exhausted")
                    raise ConcurrencyConflict(error, {"code": code, "usageLimit": coupon.usage_limit})
                self._record("rejected")
                raise ValidationError(error, {"code": code})

            redemption = await self.repository.redeem_coupon(coupon.id, order_id)
            if redemption.outcome == RedemptionOutcome.COMMITTED:
                used_count = redemption.used_count if redemption.used_count is not None else coupon.used_count + 1
                self._record("committed")
                self.logger.info(
                    "Coupon committed",
                    coupon_code=code,
                    order_id=order_id,
                    used_count=used_count,
                    attempt=attempt
                )
                return CouponCommitResponse(coupon_code=code, order_id=order_id, used_count=used_count,
                                            usage_limit=coupon.usage_limit)
            if redemption.outcome == RedemptionOutcome.ALREADY_COMMITTED:
                used_count = redemption.used_count if redemption.used_count is not None else coupon.used_count
                self._record("duplicate")
                return CouponCommitResponse(coupon_code=code, order_id=order_id, used_count=used_count,
                                            usage_limit=coupon.usage_limit, already_committed=True)

            # Refused between read and write; the next read reports why
            self._record("retry")
            self.logger.info("Coupon refused at commit, re-reading", coupon_code=code, attempt=attempt)

        self._record("exhausted")
        raise ConcurrencyConflict(
            f'Coupon "{code}" has reached its usage limit',
            {"code": code, "attempts": self.max_attempts}
        )
