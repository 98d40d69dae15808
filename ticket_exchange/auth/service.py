import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_exchange.database import utcnow
from ticket_exchange.integrations.notifications import NotificationSink
from ticket_exchange.models import User
from ticket_exchange.offers.offer_service import OfferService
from ticket_exchange.payments.referral_service import ReferralService

logger = logging.getLogger(__name__)


class IdentityService:
    def __init__(self, db: Session, notifier: Optional[NotificationSink] = None):
        self.db = db
        self.notifier = notifier
        self.referrals = ReferralService(db)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email.strip().lower()).first()

    def provision_identity(self, user_id: str, email: str, display_name: Optional[str] = None,
                           referral_code: Optional[str] = None) -> User:
        """Create the local profile for a newly seen identity.

        Idempotent: provisioning an existing identity returns it unchanged
        apart from re-running offer linking, which only touches unlinked
        offers. An unknown referral code is ignored.
        """
        email = email.strip().lower()
        user = self.get_user(user_id)
        if user is None:
            other = self.get_user_by_email(email)
            if other is not None:
                raise ValueError("Email already registered to another identity")

            referrer = self.referrals.find_referrer(referral_code)
            if referral_code and referrer is None:
                logger.info("Ignoring unknown referral code %r for %s", referral_code, user_id)

            user = User(
                id=user_id,
                email=email,
                display_name=display_name,
                referral_code=self.referrals.generate_code(),
            )
            if referrer is not None:
                user.referred_by = referrer.id
                user.referred_at = utcnow()
            self.db.add(user)
            try:
                self.db.commit()
            except IntegrityError:
                # Lost a race with a concurrent provision of the same identity
                self.db.rollback()
                user = self.get_user(user_id)
                if user is None:
                    raise ValueError("Could not provision identity")
            else:
                self.db.refresh(user)
                logger.info("Provisioned user %s%s", user_id,
                            f" referred by {user.referred_by}" if user.referred_by else "")

        OfferService(self.db, self.notifier).link_and_notify_on_signup(email, user.id)
        return user
