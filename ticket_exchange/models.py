import uuid
from enum import Enum

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ticket_exchange.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


# ================================
# Enumerations (stored as strings)
# ================================
class TicketStatus(str, Enum):
    VALID = "valid"
    USED = "used"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

TERMINAL_TICKET_STATUSES = (TicketStatus.CANCELLED.value, TicketStatus.REFUNDED.value)


class TicketMode(str, Enum):
    STANDARD = "standard"
    PRIVATE = "private"
    PUBLIC = "public"


class ListingStatus(str, Enum):
    """Ticket-side mirror of the resale ledger"""
    NONE = "none"
    LISTED = "listed"
    SOLD = "sold"
    CANCELLED = "cancelled"


class ResaleStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class HandshakeStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentType(str, Enum):
    PRIMARY_PURCHASE = "primary_purchase"
    RESALE_PURCHASE = "resale_purchase"
    VENDOR_POS = "vendor_pos"
    SUBSCRIPTION = "subscription"
    FAVOR_TICKET_PURCHASE = "favor_ticket_purchase"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class CashStatus(str, Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    DISPUTED = "disputed"


class DeliveryMethod(str, Enum):
    NFC = "nfc"
    EMAIL = "email"
    IN_PERSON = "in_person"
    APP = "app"


class StaffRole(str, Enum):
    USHER = "usher"
    SELLER = "seller"
    MANAGER = "manager"
    ADMIN = "admin"
    VENDOR = "vendor"


class SubscriptionTier(str, Enum):
    BASE = "base"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INCOMPLETE = "incomplete"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


def _in(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ================================
# Identities & Events
# ================================
class User(Base):
    """Local profile for an identity issued by the external identity provider"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(255))
    referral_code = Column(String(8), unique=True, index=True)
    referred_by = Column(String(36), ForeignKey("users.id"), index=True)
    referred_at = Column(DateTime(timezone=True))
    is_platform_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    organized_events = relationship("Event", back_populates="organizer")
    staff_roles = relationship("EventStaff", back_populates="user")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    organizer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    venue = Column(String(255))
    starts_at = Column(DateTime(timezone=True))
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    cash_sales_enabled = Column(Boolean, nullable=False, default=False)
    organizer_processor_customer_id = Column(String(255))
    organizer_payment_method_id = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    organizer = relationship("User", back_populates="organized_events")
    ticket_types = relationship("TicketType", back_populates="event", order_by="TicketType.sort_order")
    staff = relationship("EventStaff", back_populates="event")
    tickets = relationship("Ticket", back_populates="event")


class EventStaff(Base):
    __tablename__ = "event_staff"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_staff_member"),
        CheckConstraint(_in("role", StaffRole), name="ck_event_staff_role"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    event = relationship("Event", back_populates="staff")
    user = relationship("User", back_populates="staff_roles")


# ================================
# Capacity Ledger
# ================================
class TicketType(Base):
    """A priced tier of an event; ``sold_count`` is written only by the capacity ledger"""
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_ticket_types_price_non_negative"),
        CheckConstraint("sold_count >= 0", name="ck_ticket_types_sold_non_negative"),
        CheckConstraint("max_quantity IS NULL OR max_quantity > 0", name="ck_ticket_types_max_positive"),
        CheckConstraint("max_quantity IS NULL OR sold_count <= max_quantity", name="ck_ticket_types_within_capacity"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    max_quantity = Column(Integer)
    sold_count = Column(Integer, nullable=False, default=0)
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    event = relationship("Event", back_populates="ticket_types")


# ================================
# Tickets
# ================================
class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint(_in("status", TicketStatus), name="ck_tickets_status"),
        CheckConstraint(_in("ticket_mode", TicketMode), name="ck_tickets_mode"),
        CheckConstraint(_in("listing_status", ListingStatus), name="ck_tickets_listing_status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    ticket_number = Column(String(32), unique=True, nullable=False)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    ticket_type_id = Column(String(36), ForeignKey("ticket_types.id"), index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), index=True)
    offer_id = Column(String(36), index=True)
    owner_user_id = Column(String(36), ForeignKey("users.id"), index=True)
    owner_email = Column(String(255), index=True)
    owner_name = Column(String(255))
    price_paid_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=TicketStatus.VALID.value, index=True)
    ticket_mode = Column(String(20), nullable=False, default=TicketMode.STANDARD.value)
    listing_status = Column(String(20), nullable=False, default=ListingStatus.NONE.value)
    listing_price_cents = Column(Integer)
    payment_method = Column(String(20), default="card")
    delivery_method = Column(String(20))
    transfer_token = Column(String(64), unique=True)
    transfer_token_expires_at = Column(DateTime(timezone=True))
    sold_by = Column(String(36), ForeignKey("users.id"))
    checked_in_at = Column(DateTime(timezone=True))
    checked_in_by = Column(String(36), ForeignKey("users.id"))
    capacity_released_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    event = relationship("Event", back_populates="tickets")
    ticket_type = relationship("TicketType")
    payment = relationship("Payment", back_populates="tickets")
    listings = relationship("ResaleListing", back_populates="ticket", order_by="ResaleListing.created_at")


# ================================
# Resale Listing Ledger
# ================================
class ResaleListing(Base):
    __tablename__ = "resale_listings"
    __table_args__ = (
        CheckConstraint("price_cents > 0", name="ck_resale_listings_price_positive"),
        CheckConstraint(_in("status", ResaleStatus), name="ck_resale_listings_status"),
        # At most one active listing per ticket, enforced by the store itself
        Index(
            "uq_resale_listings_active_ticket", "ticket_id", unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    ticket_id = Column(String(36), ForeignKey("tickets.id"), nullable=False, index=True)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=ResaleStatus.ACTIVE.value, index=True)
    buyer_id = Column(String(36), ForeignKey("users.id"))
    payment_id = Column(String(36), ForeignKey("payments.id"))
    refund_flagged = Column(Boolean, nullable=False, default=False)
    sold_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    ticket = relationship("Ticket", back_populates="listings")


# ================================
# Favor Offers
# ================================
class TicketOffer(Base):
    __tablename__ = "ticket_offers"
    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_ticket_offers_price"),
        CheckConstraint("ticket_mode IN ('private', 'public')", name="ck_ticket_offers_mode"),
        CheckConstraint(_in("status", OfferStatus), name="ck_ticket_offers_status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    organizer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    recipient_email = Column(String(255), nullable=False, index=True)
    recipient_user_id = Column(String(36), ForeignKey("users.id"), index=True)
    ticket_type_id = Column(String(36), ForeignKey("ticket_types.id"))
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    ticket_mode = Column(String(20), nullable=False, default=TicketMode.PRIVATE.value)
    message = Column(Text)
    status = Column(String(20), nullable=False, default=OfferStatus.PENDING.value, index=True)
    ticket_id = Column(String(36), ForeignKey("tickets.id"))
    payment_id = Column(String(36), ForeignKey("payments.id"))
    expires_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    event = relationship("Event")


# ================================
# Proximity Handshake
# ================================
class PendingPayment(Base):
    __tablename__ = "pending_payments"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_pending_payments_amount"),
        CheckConstraint(_in("status", HandshakeStatus), name="ck_pending_payments_status"),
        Index("ix_pending_payments_customer_status", "customer_id", "status"),
        Index("ix_pending_payments_expiry", "status", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    vendor_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    ticket_type_id = Column(String(36), ForeignKey("ticket_types.id"))
    ticket_type_name = Column(String(100))
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=HandshakeStatus.PENDING.value)
    # Bumped on every write so stream consumers can order events per row
    version = Column(Integer, nullable=False, default=1)
    payment_id = Column(String(36), ForeignKey("payments.id"))
    ticket_id = Column(String(36), ForeignKey("tickets.id"))
    failure_reason = Column(Text)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# ================================
# Payment Ledger
# ================================
class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_payments_amount"),
        CheckConstraint("platform_fee_cents >= 0", name="ck_payments_fee"),
        CheckConstraint(_in("status", PaymentStatus), name="ck_payments_status"),
        CheckConstraint(_in("type", PaymentType), name="ck_payments_type"),
        # One open purchase per resale listing
        Index(
            "uq_payments_open_listing", "listing_id", unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(String(36), ForeignKey("events.id"), index=True)
    type = Column(String(30), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    # Plain references: the dependent rows point back with real foreign keys
    listing_id = Column(String(36))
    offer_id = Column(String(36))
    pending_payment_id = Column(String(36))
    processor_intent_id = Column(String(255), unique=True)
    processor_charge_id = Column(String(255))
    payment_metadata = Column("metadata", JSON, default=dict)
    refunded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    tickets = relationship("Ticket", back_populates="payment")


# ================================
# Referral System
# ================================
class ReferralConfig(Base):
    """Singleton row; read through ``ReferralConfigSnapshot`` only"""
    __tablename__ = "referral_config"
    __table_args__ = (CheckConstraint("id = 1", name="ck_referral_config_singleton"),)

    id = Column(Integer, primary_key=True, default=1)
    referee_discount_percent = Column(Numeric(5, 4), nullable=False, default=0)
    referrer_revenue_share_percent = Column(Numeric(5, 4), nullable=False, default=0)
    benefit_duration_days = Column(Integer, nullable=False, default=365)
    referral_enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ReferralEarning(Base):
    """Append-only audit of referral terms as applied at transaction time"""
    __tablename__ = "referral_earnings"

    id = Column(String(36), primary_key=True, default=new_id)
    referrer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    referred_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), index=True)
    platform_fee_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    earning_cents = Column(Integer, nullable=False, default=0)
    discount_percent_applied = Column(Numeric(5, 4), nullable=False, default=0)
    revenue_share_percent_applied = Column(Numeric(5, 4), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ================================
# Cash Sales & Seller Balances
# ================================
class CashTransaction(Base):
    __tablename__ = "cash_transactions"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_cash_transactions_amount"),
        CheckConstraint(_in("status", CashStatus), name="ck_cash_transactions_status"),
        Index("ix_cash_transactions_event_status", "event_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    ticket_id = Column(String(36), ForeignKey("tickets.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=CashStatus.PENDING.value)
    fee_charged = Column(Boolean, nullable=False, default=False)
    fee_payment_intent_id = Column(String(255))
    fee_charge_error = Column(Text)
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    delivery_method = Column(String(20))
    reconciled_at = Column(DateTime(timezone=True))
    reconciled_by = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    seller = relationship("User", foreign_keys=[seller_id])


class SellerBalance(Base):
    """Cached view of the processor's per-seller sub-balance; never authoritative"""
    __tablename__ = "seller_balances"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    processor_account_id = Column(String(255), nullable=False, index=True)
    available_balance_cents = Column(Integer, nullable=False, default=0)
    pending_balance_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    details_submitted = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# ================================
# Account Subscriptions
# ================================
class Subscription(Base):
    """One row per user; ``tier`` is only in effect while ``status`` is active"""
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(_in("tier", SubscriptionTier), name="ck_subscriptions_tier"),
        CheckConstraint(_in("status", SubscriptionStatus), name="ck_subscriptions_status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    tier = Column(String(20), nullable=False, default=SubscriptionTier.BASE.value, index=True)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)
    # Latest subscription payment
    payment_id = Column(String(36), ForeignKey("payments.id"))
    current_period_start = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def effective_tier(self) -> str:
        if self.status == SubscriptionStatus.ACTIVE.value:
            return self.tier
        return SubscriptionTier.BASE.value


# ================================
# Notifications
# ================================
class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    data = Column(JSON, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
