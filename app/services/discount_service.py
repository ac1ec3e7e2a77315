from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.billing_cycles import as_utc, round_cents
from app.domain.models import (
    DiscountAppliesTo,
    DiscountCode,
    DiscountCodeCreate,
    DiscountCodeUpdate,
    DiscountRedemption,
    DiscountStatsRead,
    DiscountTopCode,
    DiscountType,
    now_utc,
)
from app.infra.db import get_engine
from app.services.errors import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

REASON_INVALID = "Invalid discount code"
REASON_INACTIVE = "This discount code is no longer active"
REASON_NOT_YET_VALID = "This discount code is not yet valid"
REASON_EXPIRED = "This discount code has expired"
REASON_MAX_REDEMPTIONS = "This discount code has reached its maximum usage limit"
REASON_TENANT_LIMIT = "You have already used this discount code the maximum number of times"
REASON_PLAN_NOT_ELIGIBLE = "This discount code is not valid for your selected plan"

NON_NULLABLE_UPDATE_FIELDS = ("name", "value", "applies_to", "applicable_plan_ids", "valid_from", "is_active")

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def normalize_code(value: str) -> str:
    return _NON_ALNUM.sub("", value.upper())


@dataclass
class DiscountValidation:
    valid: bool
    reason: str | None = None
    code: DiscountCode | None = None
    discount_amount_cents: int = 0
    final_amount_cents: int = 0


@dataclass
class DiscountApplication:
    applied: bool
    reason: str | None = None
    discount_amount_cents: int = 0
    final_amount_cents: int = 0
    redemption: DiscountRedemption | None = None


def compute_discount_amount(code: DiscountCode, order_amount_cents: int) -> int:
    if code.discount_type == DiscountType.PERCENTAGE:
        amount = round_cents(order_amount_cents * code.value / 100)
    elif code.discount_type == DiscountType.FIXED_AMOUNT:
        amount = int(code.value)
    else:
        # Free months and trial extensions are honoured outside the order total.
        amount = 0
    return max(0, min(amount, order_amount_cents))


class DiscountService:
    CODE_GENERATION_ATTEMPTS = 10

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_code(self, session: Session, code_id: str) -> DiscountCode:
        row = session.get(DiscountCode, code_id)
        if row is None:
            raise NotFoundError("discount code not found")
        return row

    def _find_by_code(self, session: Session, code: str) -> DiscountCode | None:
        return session.exec(select(DiscountCode).where(DiscountCode.code == normalize_code(code))).first()

    @staticmethod
    def _validate_value(discount_type: DiscountType, value: float) -> None:
        if value <= 0:
            raise ValidationError("discount value must be greater than zero")
        if discount_type == DiscountType.PERCENTAGE and value > 100:
            raise ValidationError("percentage discount cannot exceed 100")

    @staticmethod
    def _validate_window(valid_from: datetime, valid_until: datetime | None) -> None:
        if valid_until is not None and as_utc(valid_until) <= as_utc(valid_from):
            raise ValidationError("valid_until must be later than valid_from")

    def _build_code(self, payload: DiscountCodeCreate, code: str, created_by: str | None) -> DiscountCode:
        self._validate_value(payload.discount_type, payload.value)
        valid_from = as_utc(payload.valid_from) if payload.valid_from else now_utc()
        self._validate_window(valid_from, payload.valid_until)
        return DiscountCode(
            code=code,
            name=payload.name.strip(),
            description=payload.description,
            discount_type=payload.discount_type,
            value=payload.value,
            currency=payload.currency.upper(),
            duration=payload.duration,
            duration_in_months=payload.duration_in_months,
            applies_to=payload.applies_to,
            applicable_plan_ids=list(payload.applicable_plan_ids),
            min_order_amount_cents=payload.min_order_amount_cents,
            max_redemptions=payload.max_redemptions,
            max_redemptions_per_tenant=payload.max_redemptions_per_tenant,
            valid_from=valid_from,
            valid_until=as_utc(payload.valid_until) if payload.valid_until else None,
            is_active=payload.is_active,
            campaign_id=payload.campaign_id,
            created_by=created_by,
        )

    def create_code(self, payload: DiscountCodeCreate, created_by: str | None = None) -> DiscountCode:
        code = normalize_code(payload.code)
        if not code:
            raise ValidationError("discount code must contain letters or digits")
        with self._session() as session:
            if self._find_by_code(session, code) is not None:
                raise ConflictError(f"Discount code '{code}' already exists")
            row = self._build_code(payload, code, created_by)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"Discount code '{code}' already exists") from exc
            session.refresh(row)
            return row

    def list_codes(
        self,
        *,
        is_active: bool | None = None,
        campaign_id: str | None = None,
        include_expired: bool = False,
    ) -> list[DiscountCode]:
        with self._session() as session:
            statement = select(DiscountCode)
            if is_active is not None:
                statement = statement.where(DiscountCode.is_active == is_active)
            if campaign_id is not None:
                statement = statement.where(DiscountCode.campaign_id == campaign_id)
            if not include_expired:
                statement = statement.where(
                    or_(col(DiscountCode.valid_until).is_(None), col(DiscountCode.valid_until) > now_utc())
                )
            statement = statement.order_by(col(DiscountCode.created_at).desc())
            return list(session.exec(statement).all())

    def get_code(self, code_id: str) -> DiscountCode:
        with self._session() as session:
            return self._get_code(session, code_id)

    def get_code_by_code(self, code: str) -> DiscountCode:
        with self._session() as session:
            row = self._find_by_code(session, code)
            if row is None:
                raise NotFoundError("discount code not found")
            return row

    def update_code(self, code_id: str, payload: DiscountCodeUpdate) -> DiscountCode:
        with self._session() as session:
            row = self._get_code(session, code_id)
            updates = payload.model_dump(exclude_unset=True)
            cleared = sorted(key for key in NON_NULLABLE_UPDATE_FIELDS if key in updates and updates[key] is None)
            if cleared:
                raise ValidationError(f"{', '.join(cleared)} cannot be null")
            if "value" in updates and updates["value"] is not None:
                self._validate_value(row.discount_type, updates["value"])
            for key in ("valid_from", "valid_until"):
                if updates.get(key) is not None:
                    updates[key] = as_utc(updates[key])
            for key, value in updates.items():
                setattr(row, key, value)
            self._validate_window(row.valid_from, row.valid_until)
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def deactivate_code(self, code_id: str) -> DiscountCode:
        with self._session() as session:
            row = self._get_code(session, code_id)
            row.is_active = False
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def _tenant_redemption_count(self, session: Session, code_id: str, tenant_id: str) -> int:
        count = session.exec(
            select(func.count())
            .select_from(DiscountRedemption)
            .where(DiscountRedemption.discount_code_id == code_id)
            .where(DiscountRedemption.tenant_id == tenant_id)
        ).one()
        return int(count)

    def validate_in_session(
        self,
        session: Session,
        *,
        code: str,
        tenant_id: str,
        plan_id: str | None = None,
        order_amount_cents: int = 0,
        now: datetime | None = None,
    ) -> DiscountValidation:
        moment = as_utc(now or now_utc())
        row = self._find_by_code(session, code)
        if row is None:
            return DiscountValidation(valid=False, reason=REASON_INVALID, final_amount_cents=order_amount_cents)

        def _reject(reason: str) -> DiscountValidation:
            return DiscountValidation(valid=False, reason=reason, code=row, final_amount_cents=order_amount_cents)

        if not row.is_active:
            return _reject(REASON_INACTIVE)
        if as_utc(row.valid_from) > moment:
            return _reject(REASON_NOT_YET_VALID)
        if row.valid_until is not None and as_utc(row.valid_until) < moment:
            return _reject(REASON_EXPIRED)
        if row.max_redemptions is not None and row.current_redemptions >= row.max_redemptions:
            return _reject(REASON_MAX_REDEMPTIONS)
        if row.max_redemptions_per_tenant is not None:
            used = self._tenant_redemption_count(session, row.id, tenant_id)
            if used >= row.max_redemptions_per_tenant:
                return _reject(REASON_TENANT_LIMIT)
        if row.applies_to == DiscountAppliesTo.SPECIFIC_PLANS:
            if plan_id is None or plan_id not in row.applicable_plan_ids:
                return _reject(REASON_PLAN_NOT_ELIGIBLE)
        if row.min_order_amount_cents is not None and order_amount_cents < row.min_order_amount_cents:
            minimum = row.min_order_amount_cents / 100
            return _reject(f"Minimum order amount of {minimum:.2f} {row.currency} required for this discount")

        amount = compute_discount_amount(row, order_amount_cents)
        return DiscountValidation(
            valid=True,
            code=row,
            discount_amount_cents=amount,
            final_amount_cents=max(0, order_amount_cents - amount),
        )

    def validate_code(
        self,
        code: str,
        tenant_id: str,
        *,
        plan_id: str | None = None,
        order_amount_cents: int = 0,
    ) -> DiscountValidation:
        with self._session() as session:
            return self.validate_in_session(
                session,
                code=code,
                tenant_id=tenant_id,
                plan_id=plan_id,
                order_amount_cents=order_amount_cents,
            )

    def apply_in_session(
        self,
        session: Session,
        *,
        code: str,
        tenant_id: str,
        order_amount_cents: int,
        plan_id: str | None = None,
        subscription_id: str | None = None,
        invoice_id: str | None = None,
        redeemed_by: str | None = None,
    ) -> DiscountApplication:
        """Validate and redeem a code as part of the caller's transaction."""
        validation = self.validate_in_session(
            session,
            code=code,
            tenant_id=tenant_id,
            plan_id=plan_id,
            order_amount_cents=order_amount_cents,
        )
        if not validation.valid or validation.code is None:
            return DiscountApplication(
                applied=False,
                reason=validation.reason,
                final_amount_cents=order_amount_cents,
            )

        row = validation.code
        now = now_utc()
        claimed = session.execute(
            update(DiscountCode)
            .where(col(DiscountCode.id) == row.id)
            .where(
                or_(
                    col(DiscountCode.max_redemptions).is_(None),
                    col(DiscountCode.current_redemptions) < col(DiscountCode.max_redemptions),
                )
            )
            .values(current_redemptions=col(DiscountCode.current_redemptions) + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return DiscountApplication(
                applied=False,
                reason=REASON_MAX_REDEMPTIONS,
                final_amount_cents=order_amount_cents,
            )
        session.expire(row)

        redemption = DiscountRedemption(
            discount_code_id=row.id,
            code=row.code,
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            discount_amount_cents=validation.discount_amount_cents,
            currency=row.currency,
            redeemed_by=redeemed_by,
            redeemed_at=now,
        )
        session.add(redemption)
        return DiscountApplication(
            applied=True,
            discount_amount_cents=validation.discount_amount_cents,
            final_amount_cents=validation.final_amount_cents,
            redemption=redemption,
        )

    def apply_discount(
        self,
        *,
        code: str,
        tenant_id: str,
        order_amount_cents: int,
        plan_id: str | None = None,
        subscription_id: str | None = None,
        invoice_id: str | None = None,
        redeemed_by: str | None = None,
    ) -> DiscountApplication:
        with self._session() as session:
            result = self.apply_in_session(
                session,
                code=code,
                tenant_id=tenant_id,
                order_amount_cents=order_amount_cents,
                plan_id=plan_id,
                subscription_id=subscription_id,
                invoice_id=invoice_id,
                redeemed_by=redeemed_by,
            )
            if not result.applied:
                session.rollback()
                return result
            session.commit()
            if result.redemption is not None:
                session.refresh(result.redemption)
            logger.info(
                "discount.applied",
                code=normalize_code(code),
                tenant_id=tenant_id,
                amount_cents=result.discount_amount_cents,
            )
            return result

    def list_redemptions(
        self,
        code_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DiscountRedemption], int]:
        with self._session() as session:
            self._get_code(session, code_id)
            total = session.exec(
                select(func.count())
                .select_from(DiscountRedemption)
                .where(DiscountRedemption.discount_code_id == code_id)
            ).one()
            rows = session.exec(
                select(DiscountRedemption)
                .where(DiscountRedemption.discount_code_id == code_id)
                .order_by(col(DiscountRedemption.redeemed_at).desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return list(rows), int(total)

    def list_tenant_redemptions(self, tenant_id: str) -> list[DiscountRedemption]:
        with self._session() as session:
            rows = session.exec(
                select(DiscountRedemption)
                .where(DiscountRedemption.tenant_id == tenant_id)
                .order_by(col(DiscountRedemption.redeemed_at).desc())
            ).all()
            return list(rows)

    def get_stats(self) -> DiscountStatsRead:
        now = now_utc()
        with self._session() as session:
            codes = list(session.exec(select(DiscountCode)).all())
            redemptions = list(session.exec(select(DiscountRedemption)).all())

        expired = sum(
            1 for item in codes if item.valid_until is not None and as_utc(item.valid_until) < now
        )
        active = sum(
            1
            for item in codes
            if item.is_active and (item.valid_until is None or as_utc(item.valid_until) >= now)
        )
        per_code: dict[str, DiscountTopCode] = {}
        for item in redemptions:
            entry = per_code.setdefault(
                item.code,
                DiscountTopCode(code=item.code, redemptions=0, total_discount_cents=0),
            )
            entry.redemptions += 1
            entry.total_discount_cents += item.discount_amount_cents
        top_codes = sorted(per_code.values(), key=lambda item: item.redemptions, reverse=True)[:10]
        return DiscountStatsRead(
            total_codes=len(codes),
            active_codes=active,
            expired_codes=expired,
            total_redemptions=len(redemptions),
            total_discount_cents=sum(item.discount_amount_cents for item in redemptions),
            top_codes=top_codes,
        )

    def generate_unique_code(self, prefix: str = "", length: int = 8) -> str:
        normalized_prefix = normalize_code(prefix)
        with self._session() as session:
            for _ in range(self.CODE_GENERATION_ATTEMPTS):
                suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))
                candidate = f"{normalized_prefix}{suffix}"
                if self._find_by_code(session, candidate) is None:
                    return candidate
        raise ConflictError("could not generate a unique discount code")

    def bulk_create(
        self,
        template: DiscountCodeCreate,
        count: int,
        *,
        prefix: str = "",
        created_by: str | None = None,
    ) -> list[DiscountCode]:
        codes: set[str] = set()
        while len(codes) < count:
            codes.add(self.generate_unique_code(prefix))

        with self._session() as session:
            rows = [self._build_code(template, code, created_by) for code in sorted(codes)]
            for row in rows:
                session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("generated discount code collided, retry bulk creation") from exc
            for row in rows:
                session.refresh(row)
            return rows
