"""Coupon engine: validation, discount math and race-safe redemption."""

from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from billing_engine.core.errors import ConflictError, InvalidStateError, NotFoundError

from .models import Coupon, CouponUsage
from .policy import calculate_discount, to_cents
from .schemas import (
    CouponApply,
    CouponCreate,
    CouponQuery,
    CouponRedemption,
    CouponUpdate,
    CouponValidate,
    CouponValidation,
)


if TYPE_CHECKING:
    from .services import BillingService


logger = structlog.get_logger()


class CouponEngine:
    def __init__(self, billing: "BillingService") -> None:
        self.billing = billing
        self.repo = billing.repo

    # ============================================================
    # Catalogue
    # ============================================================

    async def create_coupon(self, data: CouponCreate) -> Coupon:
        """Create a coupon.

        Raises:
            ConflictError: If the code is already taken
        """
        if await self.repo.get_coupon_by_code(data.code) is not None:
            raise ConflictError("Coupon code already exists", details={"code": data.code})

        values = data.model_dump()
        values["valid_from"] = data.valid_from or self.billing.clock.now()
        coupon = Coupon(**values, used_count=0)
        await self.repo.add(coupon)
        logger.info("coupon_created", coupon_id=str(coupon.id), code=coupon.code)
        return coupon

    async def find_coupon(self, code: str) -> Coupon:
        coupon = await self.repo.get_coupon_by_code(code)
        if coupon is None:
            raise NotFoundError("Coupon not found", resource="coupon", resource_id=code)
        return coupon

    async def find_coupons(self, query: CouponQuery) -> tuple[list[Coupon], int]:
        return await self.repo.find_coupons(query, self.billing.clock.now())

    async def update_coupon(self, coupon_id: UUID, data: CouponUpdate) -> Coupon:
        if await self.repo.get(Coupon, coupon_id) is None:
            raise NotFoundError(
                "Coupon not found", resource="coupon", resource_id=str(coupon_id)
            )
        values = data.model_dump(exclude_unset=True)
        if values:
            await self.repo.transition(Coupon, coupon_id, None, **values)
        return await self.repo.get(Coupon, coupon_id)  # type: ignore[return-value]

    # ============================================================
    # Validation
    # ============================================================

    async def validate_coupon(self, data: CouponValidate) -> CouponValidation:
        """Check a coupon against a purchase and price the discount.

        Rules run in a fixed order and the first failure is reported.
        """
        coupon = await self.repo.get_coupon_by_code(data.code)
        failure = await self._check(coupon, data)
        if coupon is None or failure is not None:
            reason, message = failure or ("not_found", "Coupon not found")
            return CouponValidation(
                valid=False, code=data.code.upper(), reason=reason, message=message
            )

        discount = calculate_discount(
            data.amount,
            coupon.discount_type,
            coupon.discount_value,
            coupon.max_discount_amount,
        )
        return CouponValidation(
            valid=True,
            code=coupon.code,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            calculated_discount=discount,
            original_amount=data.amount,
            final_amount=to_cents(data.amount - discount),
        )

    async def _check(
        self, coupon: Coupon | None, data: CouponValidate
    ) -> tuple[str, str] | None:
        now = self.billing.clock.now()
        if coupon is None:
            return "not_found", "Coupon not found"
        if not coupon.is_active:
            return "inactive", "Coupon is not active"
        if coupon.valid_from > now:
            return "not_yet_valid", "Coupon is not valid yet"
        if coupon.valid_until is not None and coupon.valid_until < now:
            return "expired", "Coupon has expired"
        if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
            return "exhausted", "Coupon has no redemptions left"
        if coupon.applicable_plans and data.plan_code not in coupon.applicable_plans:
            return "plan_not_applicable", "Coupon does not apply to this plan"
        if coupon.min_amount is not None and data.amount < coupon.min_amount:
            return (
                "below_minimum",
                f"Minimum amount for this coupon is {coupon.min_amount}",
            )
        if coupon.first_purchase_only and data.tenant_id is not None:
            if await self.repo.tenant_has_coupon_usage(data.tenant_id):
                return "first_purchase_only", "Coupon is only valid on a first purchase"
        return None

    # ============================================================
    # Redemption
    # ============================================================

    async def apply_coupon(self, data: CouponApply) -> CouponRedemption:
        """Redeem a coupon for a tenant.

        The redemption slot is taken with one conditional increment, so
        a limited coupon cannot be over-redeemed by concurrent callers.

        Raises:
            NotFoundError: If the coupon does not exist
            ConflictError: If the coupon ran out of redemptions
            InvalidStateError: If any other validation rule fails
        """
        plan_code = await self._plan_code(data)
        validation = await self.validate_coupon(
            CouponValidate(
                code=data.code,
                plan_code=plan_code or "",
                amount=data.amount,
                tenant_id=data.tenant_id,
            )
        )
        if not validation.valid:
            if validation.reason == "not_found":
                raise NotFoundError(
                    "Coupon not found", resource="coupon", resource_id=data.code
                )
            if validation.reason == "exhausted":
                raise ConflictError(validation.message, details={"code": validation.code})
            raise InvalidStateError(
                validation.message,
                error_code=f"coupon_{validation.reason}",
                details={"code": validation.code},
            )

        coupon = await self.find_coupon(data.code)
        if not await self.repo.claim_coupon_use(coupon.id):
            raise ConflictError(
                "Coupon has no redemptions left", details={"code": coupon.code}
            )

        discount = validation.calculated_discount or Decimal(0)
        usage = CouponUsage(
            coupon_id=coupon.id,
            tenant_id=data.tenant_id,
            subscription_id=data.subscription_id,
            discount_applied=discount,
            used_at=self.billing.clock.now(),
        )
        await self.repo.add(usage)

        logger.info(
            "coupon_applied",
            code=coupon.code,
            tenant_id=str(data.tenant_id),
            discount=str(discount),
        )
        return CouponRedemption(
            coupon_id=coupon.id,
            usage_id=usage.id,
            discount=discount,
            final_amount=to_cents(data.amount - discount),
            duration_months=coupon.duration_months,
        )

    async def _plan_code(self, data: CouponApply) -> str | None:
        if data.subscription_id:
            subscription = await self.billing.subscriptions.find_subscription(
                data.subscription_id
            )
            return subscription.plan_type
        return await self.billing.tenants.get_plan(data.tenant_id)
