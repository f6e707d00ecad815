import logging
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from orderflow.db.gateway import PersistenceGateway
from orderflow.errors import ErrorKind, PromotionException
from orderflow.models.promotion import Promotion, PromotionTag, PromotionType, PromotionUsage
from orderflow.utils.clock import as_utc, utcnow

log = logging.getLogger(__name__)

# deterministic application order
PROMOTION_ORDER = {
    PromotionTag.AUTO.value: 1,
    PromotionTag.STACKABLE.value: 2,
    PromotionTag.EXCLUSIVE.value: 3,
}

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class PromotionView:
    id: Optional[int]
    code: str
    type: str
    tag: str
    value: Decimal

    @classmethod
    def from_row(cls, p: Promotion) -> "PromotionView":
        return cls(id=p.id, code=p.code, type=p.type, tag=p.tag, value=Decimal(str(p.value)))


@dataclass
class AppliedPromotion:
    id: Optional[int]
    code: str
    type: str
    tag: str
    value: Decimal
    discount_amount: Decimal
    amount_before: Decimal
    amount_after: Decimal


@dataclass
class PromotionResult:
    final_amount: Decimal
    total_discount: Decimal
    applied_promotions: List[AppliedPromotion] = field(default_factory=list)
    invalid_codes: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        def plain(v):
            return str(v) if isinstance(v, Decimal) else v

        return {
            "final_amount": str(self.final_amount),
            "total_discount": str(self.total_discount),
            "applied_promotions": [
                {k: plain(v) for k, v in asdict(a).items()} for a in self.applied_promotions
            ],
            "invalid_codes": list(self.invalid_codes),
        }


def validate_compatibility(promotions: Iterable[PromotionView]) -> bool:
    tags = [p.tag for p in promotions]
    exclusive = tags.count(PromotionTag.EXCLUSIVE.value)
    if exclusive > 1:
        raise PromotionException(
            ErrorKind.INCOMPATIBLE_PROMOTIONS, "Only one EXCLUSIVE promotion allowed"
        )
    if exclusive and len(tags) > exclusive:
        raise PromotionException(
            ErrorKind.INCOMPATIBLE_PROMOTIONS,
            "EXCLUSIVE promotions cannot be combined with others",
        )
    return True


def sort_promotions(promotions: Iterable[PromotionView]) -> List[PromotionView]:
    # sorted() is stable, so promotions with the same tag keep their input order
    return sorted(promotions, key=lambda p: PROMOTION_ORDER[p.tag])


def single_discount(amount: Decimal, promotion: PromotionView) -> Decimal:
    if promotion.type == PromotionType.PERCENTAGE.value:
        return to_money(amount * promotion.value / Decimal(100))
    if promotion.type == PromotionType.FIXED_AMOUNT.value:
        return to_money(promotion.value)
    if promotion.type == PromotionType.FREE_SHIPPING.value:
        # shipping is not part of the subtotal
        return Decimal("0.00")
    raise ValueError(f"Unknown promotion type {promotion.type}")


def apply_sequentially(subtotal, promotions: Iterable[PromotionView]) -> PromotionResult:
    """Apply already-sorted promotions one after the other; never below zero."""
    start = to_money(subtotal)
    current = start
    applied = []
    for promo in promotions:
        discount = single_discount(current, promo)
        after = max(Decimal("0.00"), current - discount)
        applied.append(
            AppliedPromotion(
                id=promo.id,
                code=promo.code,
                type=promo.type,
                tag=promo.tag,
                value=promo.value,
                discount_amount=discount,
                amount_before=current,
                amount_after=after,
            )
        )
        current = after
        if current == 0:
            break
    return PromotionResult(
        final_amount=current,
        total_discount=to_money(start - current),
        applied_promotions=applied,
    )


class PromotionService:
    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway

    def apply_promotions(
        self, user_id: int, subtotal, codes: Optional[List[str]] = None
    ) -> PromotionResult:
        with self.gateway.session() as s:
            return self.apply_in(s, user_id, subtotal, codes)

    def apply_in(
        self, s: Session, user_id: int, subtotal, codes: Optional[List[str]] = None
    ) -> PromotionResult:
        subtotal = to_money(subtotal)
        if subtotal <= 0:
            raise PromotionException(
                ErrorKind.INVALID_SUBTOTAL, "Subtotal must be greater than 0"
            )

        now = utcnow()
        valid: List[PromotionView] = [
            PromotionView.from_row(p)
            for p in s.scalars(
                select(Promotion)
                .where(
                    Promotion.tag == PromotionTag.AUTO.value,
                    Promotion.active.is_(True),
                    or_(Promotion.expires_at.is_(None), Promotion.expires_at > now),
                )
                .order_by(Promotion.id)
            )
        ]
        invalid = []

        for code in codes or []:
            promo = s.scalar(select(Promotion).where(Promotion.code == code))
            if promo is None:
                invalid.append({"code": code, "reason": "PROMOTION_NOT_FOUND"})
                continue
            if not promo.active:
                invalid.append({"code": code, "reason": "PROMOTION_INACTIVE"})
                continue
            if promo.expires_at is not None and as_utc(promo.expires_at) <= now:
                invalid.append({"code": code, "reason": "PROMOTION_EXPIRED"})
                continue
            usage = s.scalar(
                select(PromotionUsage).where(
                    PromotionUsage.user_id == user_id,
                    PromotionUsage.promotion_id == promo.id,
                )
            )
            if usage is not None and usage.count >= promo.usage_limit_per_user:
                invalid.append({"code": code, "reason": "USAGE_LIMIT_EXCEEDED"})
                continue
            if any(v.id == promo.id for v in valid):
                continue
            valid.append(PromotionView.from_row(promo))

        validate_compatibility(valid)
        result = apply_sequentially(subtotal, sort_promotions(valid))
        result.invalid_codes = invalid
        if invalid:
            log.info("Ignored promotion codes for user %s: %s", user_id, invalid)
        return result

    def increment_usage_in(self, s: Session, user_id: int, promotion_ids: Iterable[int]):
        for pid in promotion_ids:
            if pid is None:
                continue
            usage = s.scalar(
                select(PromotionUsage).where(
                    PromotionUsage.user_id == user_id,
                    PromotionUsage.promotion_id == pid,
                )
            )
            if usage is None:
                s.add(PromotionUsage(user_id=user_id, promotion_id=pid, count=1))
            else:
                self.gateway.conditional_update(
                    s,
                    PromotionUsage,
                    [PromotionUsage.id == usage.id],
                    {"count": PromotionUsage.count + 1},
                )
        s.flush()

    def increment_usage(self, user_id: int, promotion_ids: Iterable[int]):
        with self.gateway.transaction() as s:
            self.increment_usage_in(s, user_id, promotion_ids)

    def get_user_usage(self, user_id: int) -> List[Dict[str, Any]]:
        with self.gateway.session() as s:
            rows = s.execute(
                select(PromotionUsage, Promotion)
                .join(Promotion, Promotion.id == PromotionUsage.promotion_id)
                .where(PromotionUsage.user_id == user_id)
                .order_by(PromotionUsage.id)
            ).all()
        return [
            {
                "promotion_id": u.promotion_id,
                "code": p.code,
                "count": u.count,
                "limit": p.usage_limit_per_user,
                "remaining": max(0, p.usage_limit_per_user - u.count),
            }
            for u, p in rows
        ]
