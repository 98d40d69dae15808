"""
Payment processor contract and the in-process simulator used for
development and tests.

The engine only relies on the operations declared on ``PaymentProcessor``;
anything the real processor does internally (risk checks, payout schedules)
is out of scope.
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from ticket_exchange.exceptions import ProcessorFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeIntent:
    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class ChargeOutcome:
    intent_id: Optional[str]
    success: bool
    charge_ref: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class SubBalance:
    available_cents: int
    pending_cents: int
    payouts_enabled: bool


@dataclass(frozen=True)
class WithdrawalResult:
    completed: bool
    amount_cents: int = 0
    payout_id: Optional[str] = None
    needs_onboarding: bool = False
    onboarding_url: Optional[str] = None


class PaymentProcessor(ABC):
    """Capability the marketplace needs from an external payment processor.

    Implementations raise ``ProcessorFailure`` for transport errors; a
    declined charge is reported through ``ChargeOutcome.success`` instead.
    """

    @abstractmethod
    def create_charge_intent(self, amount_cents: int, currency: str, payer_ref: str,
                             metadata: Optional[dict] = None) -> ChargeIntent:
        ...

    @abstractmethod
    def confirm_charge(self, intent_id: str) -> ChargeOutcome:
        ...

    @abstractmethod
    def cancel_charge(self, intent_id: str) -> bool:
        """Void an unconfirmed intent. Returns False if it was already charged."""

    @abstractmethod
    def refund(self, charge_ref: str) -> str:
        ...

    @abstractmethod
    def charge_stored_method(self, customer_ref: str, payment_method_ref: str, amount_cents: int,
                             currency: str, metadata: Optional[dict] = None) -> ChargeOutcome:
        ...

    @abstractmethod
    def create_seller_account(self, user_id: str) -> str:
        ...

    @abstractmethod
    def get_balance(self, account_ref: str) -> SubBalance:
        ...

    @abstractmethod
    def withdraw(self, account_ref: str, amount_cents: Optional[int] = None) -> WithdrawalResult:
        ...


@dataclass
class _SimAccount:
    available_cents: int = 0
    pending_cents: int = 0
    payouts_enabled: bool = False


@dataclass
class _SimIntent:
    amount_cents: int
    currency: str
    payer_ref: str
    metadata: dict = field(default_factory=dict)
    charge_ref: Optional[str] = None
    cancelled: bool = False


class SimulatedPaymentProcessor(PaymentProcessor):
    """Thread-safe in-memory processor.

    ``decline_all`` / ``declined_payers`` make charges fail with a decline,
    ``unavailable`` makes every call raise ``ProcessorFailure``. Charges whose
    metadata names a ``destination_account`` credit ``transfer_amount_cents``
    to that account's pending balance on success.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._intents: Dict[str, _SimIntent] = {}
        self._accounts: Dict[str, _SimAccount] = {}
        self._refunded: Set[str] = set()
        self.decline_all = False
        self.declined_payers: Set[str] = set()
        self.declined_payment_methods: Set[str] = set()
        self.unavailable = False
        self.onboarding_base_url = "https://connect.example.test/onboarding"

    def _check_available(self):
        if self.unavailable:
            raise ProcessorFailure("Payment processor unavailable")

    def create_charge_intent(self, amount_cents, currency, payer_ref, metadata=None):
        self._check_available()
        if amount_cents <= 0:
            raise ProcessorFailure("Charge amount must be positive", amount_cents=amount_cents)
        intent_id = f"pi_sim_{secrets.token_hex(12)}"
        with self._lock:
            self._intents[intent_id] = _SimIntent(amount_cents, currency, payer_ref, dict(metadata or {}))
        return ChargeIntent(intent_id=intent_id, client_secret=f"{intent_id}_secret_{secrets.token_hex(8)}")

    def confirm_charge(self, intent_id):
        self._check_available()
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise ProcessorFailure("Unknown charge intent", intent_id=intent_id)
            if intent.charge_ref:
                return ChargeOutcome(intent_id, True, intent.charge_ref)
            if intent.cancelled:
                raise ProcessorFailure("Charge intent was cancelled", intent_id=intent_id)
            if self.decline_all or intent.payer_ref in self.declined_payers:
                return ChargeOutcome(intent_id, False, failure_message="Your card was declined.")
            intent.charge_ref = f"ch_sim_{secrets.token_hex(12)}"
            destination = intent.metadata.get("destination_account")
            if destination in self._accounts:
                self._accounts[destination].pending_cents += int(intent.metadata.get("transfer_amount_cents", 0))
            return ChargeOutcome(intent_id, True, intent.charge_ref)

    def cancel_charge(self, intent_id):
        self._check_available()
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise ProcessorFailure("Unknown charge intent", intent_id=intent_id)
            if intent.charge_ref:
                return False
            intent.cancelled = True
            return True

    def refund(self, charge_ref):
        self._check_available()
        with self._lock:
            if charge_ref in self._refunded:
                raise ProcessorFailure("Charge already refunded", charge_ref=charge_ref)
            self._refunded.add(charge_ref)
        return f"re_sim_{secrets.token_hex(12)}"

    def charge_stored_method(self, customer_ref, payment_method_ref, amount_cents, currency, metadata=None):
        self._check_available()
        intent_id = f"pi_sim_{secrets.token_hex(12)}"
        if self.decline_all or payment_method_ref in self.declined_payment_methods:
            return ChargeOutcome(intent_id, False, failure_message="Your card was declined.")
        with self._lock:
            self._intents[intent_id] = _SimIntent(amount_cents, currency, customer_ref, dict(metadata or {}),
                                                  charge_ref=f"ch_sim_{secrets.token_hex(12)}")
            return ChargeOutcome(intent_id, True, self._intents[intent_id].charge_ref)

    def create_seller_account(self, user_id):
        self._check_available()
        account_ref = f"acct_sim_{secrets.token_hex(8)}"
        with self._lock:
            self._accounts[account_ref] = _SimAccount()
        return account_ref

    def get_balance(self, account_ref):
        self._check_available()
        with self._lock:
            account = self._account(account_ref)
            return SubBalance(account.available_cents, account.pending_cents, account.payouts_enabled)

    def withdraw(self, account_ref, amount_cents=None):
        self._check_available()
        with self._lock:
            account = self._account(account_ref)
            if not account.payouts_enabled:
                return WithdrawalResult(
                    completed=False, needs_onboarding=True,
                    onboarding_url=f"{self.onboarding_base_url}/{account_ref}",
                )
            amount = account.available_cents if amount_cents is None else amount_cents
            if amount <= 0 or amount > account.available_cents:
                raise ProcessorFailure("Insufficient available balance", requested_cents=amount)
            account.available_cents -= amount
            return WithdrawalResult(completed=True, amount_cents=amount, payout_id=f"po_sim_{secrets.token_hex(8)}")

    # Simulation controls

    def _account(self, account_ref) -> _SimAccount:
        account = self._accounts.get(account_ref)
        if account is None:
            raise ProcessorFailure("Unknown seller account", account_ref=account_ref)
        return account

    def enable_payouts(self, account_ref: str, enabled: bool = True):
        with self._lock:
            self._account(account_ref).payouts_enabled = enabled

    def release_pending(self, account_ref: str):
        """Move everything pending to available, as the processor's payout schedule would"""
        with self._lock:
            account = self._account(account_ref)
            account.available_cents += account.pending_cents
            account.pending_cents = 0

    def is_refunded(self, charge_ref: str) -> bool:
        return charge_ref in self._refunded


_processor: PaymentProcessor = SimulatedPaymentProcessor()


def get_processor() -> PaymentProcessor:
    """FastAPI dependency returning the configured processor"""
    return _processor
