import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import as_utc, atomic, utcnow
from ticket_exchange.models import Payment, ReferralConfig, ReferralEarning, User
from ticket_exchange.payments.fee_calculator import ReferralContext

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


@dataclass(frozen=True)
class ReferralConfigSnapshot:
    """Referral terms read once at the start of a transaction"""
    discount_percent: Decimal
    revenue_share_percent: Decimal
    benefit_duration_days: int
    enabled: bool

    def context_for(self, buyer: User, now: Optional[datetime] = None) -> Optional[ReferralContext]:
        """Referral terms for ``buyer`` if their benefit window is still open"""
        if not self.enabled or not buyer.referred_by or buyer.referred_at is None:
            return None
        now = now or utcnow()
        if now - as_utc(buyer.referred_at) >= timedelta(days=self.benefit_duration_days):
            return None
        return ReferralContext(
            referrer_id=buyer.referred_by,
            discount_percent=self.discount_percent,
            revenue_share_percent=self.revenue_share_percent,
        )


class ReferralService:
    def __init__(self, db: Session):
        self.db = db

    def _config_row(self) -> ReferralConfig:
        config = self.db.get(ReferralConfig, 1)
        if config is None:
            config = ReferralConfig(
                id=1,
                referee_discount_percent=settings.REFERRAL_DISCOUNT_PERCENT,
                referrer_revenue_share_percent=settings.REFERRAL_REVENUE_SHARE_PERCENT,
                benefit_duration_days=settings.REFERRAL_BENEFIT_DAYS,
                referral_enabled=True,
            )
            try:
                with atomic(self.db):
                    self.db.add(config)
            except IntegrityError:
                # Another request seeded the row first
                config = self.db.get(ReferralConfig, 1)
            self.db.refresh(config)
        return config

    def load_config_snapshot(self) -> ReferralConfigSnapshot:
        config = self._config_row()
        self.db.refresh(config)
        return ReferralConfigSnapshot(
            discount_percent=Decimal(config.referee_discount_percent),
            revenue_share_percent=Decimal(config.referrer_revenue_share_percent),
            benefit_duration_days=config.benefit_duration_days,
            enabled=config.referral_enabled,
        )

    def update_config(self, discount_percent: Optional[Decimal] = None,
                      revenue_share_percent: Optional[Decimal] = None,
                      benefit_duration_days: Optional[int] = None,
                      enabled: Optional[bool] = None) -> ReferralConfigSnapshot:
        """Change global terms; earnings already recorded keep the terms they were written with"""
        for percent in (discount_percent, revenue_share_percent):
            if percent is not None and not Decimal("0") <= Decimal(percent) <= Decimal("1"):
                raise ValueError("Percentages must be between 0 and 1")
        if benefit_duration_days is not None and benefit_duration_days < 0:
            raise ValueError("Benefit duration cannot be negative")

        config = self._config_row()
        with atomic(self.db):
            if discount_percent is not None:
                config.referee_discount_percent = Decimal(discount_percent)
            if revenue_share_percent is not None:
                config.referrer_revenue_share_percent = Decimal(revenue_share_percent)
            if benefit_duration_days is not None:
                config.benefit_duration_days = benefit_duration_days
            if enabled is not None:
                config.referral_enabled = enabled
        logger.info("Referral configuration updated")
        return self.load_config_snapshot()

    # Codes

    def generate_code(self) -> str:
        while True:
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            if not self.db.query(User.id).filter(User.referral_code == code).first():
                return code

    def find_referrer(self, code: Optional[str]) -> Optional[User]:
        if not code:
            return None
        return self.db.query(User).filter(User.referral_code == code.strip().upper()).first()

    # Earnings

    @staticmethod
    def snapshot_metadata(context: Optional[ReferralContext]) -> Optional[dict]:
        if context is None:
            return None
        return {
            "referrer_id": context.referrer_id,
            "discount_percent": str(context.discount_percent),
            "revenue_share_percent": str(context.revenue_share_percent),
        }

    def record_earning(self, payment: Payment) -> Optional[ReferralEarning]:
        """Append the earning for a completed payment from the terms stored on it.

        Joins the caller's transaction. The percentages come from the payment's
        metadata, never from the current configuration.
        """
        metadata = payment.payment_metadata or {}
        referral = metadata.get("referral")
        fees = metadata.get("fees") or {}
        if not referral:
            return None

        earning = ReferralEarning(
            referrer_id=referral["referrer_id"],
            referred_user_id=payment.user_id,
            payment_id=payment.id,
            platform_fee_cents=fees.get("platform_fee_cents", 0),
            discount_cents=fees.get("discount_cents", 0),
            earning_cents=fees.get("referral_earning_cents", 0),
            discount_percent_applied=Decimal(referral["discount_percent"]),
            revenue_share_percent_applied=Decimal(referral["revenue_share_percent"]),
            status="pending",
        )
        self.db.add(earning)
        self.db.flush()
        logger.info("Referral earning %s cents for %s on payment %s",
                    earning.earning_cents, earning.referrer_id, payment.id)
        return earning

    def cancel_earnings_for_payment(self, payment_id: str) -> int:
        return self.db.execute(
            update(ReferralEarning)
            .where(ReferralEarning.payment_id == payment_id, ReferralEarning.status == "pending")
            .values(status="cancelled")
            .execution_options(synchronize_session=False)
        ).rowcount
