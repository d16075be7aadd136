"""
Ride Marketplace - Payment Gateway Adapter

The only module that knows about the payment processor. The rest of the
service sees four operations on opaque references:

    authorize(amount, payment_source) -> authorization_ref
    capture(authorization_ref)        -> capture_ref
    void(authorization_ref)           -> True
    refund(authorization_ref, amount) -> refund_ref

Every authorization is recorded in `payment_authorizations`. Capture, void
and refund are idempotent per authorization: retrying one that already
happened returns the earlier result instead of charging twice, and the
processor call itself carries a deterministic idempotency key so a retry
after a lost response is also safe.
"""

import logging
import threading
import uuid
from decimal import Decimal
from typing import Dict, Optional, Set

import stripe

from config import ConfigurationError, config
from database import Database
from errors import (
    OUTCOME_PARTIAL,
    PaymentAuthorizationFailed,
    PaymentCaptureFailed,
    RefundFailed,
    ValidationError,
    VoidFailed,
)
from models import utcnow
from money import format_amount, to_minor


logger = logging.getLogger(__name__)


class ProcessorError(Exception):
    """Raised by a processor backend when the processor refuses or fails a call."""

    def __init__(self, message: str, declined: bool = False):
        self.declined = declined
        super().__init__(message)


# =============================================================================
# Processor Backends
# =============================================================================

class StripeProcessor:
    """
    Stripe PaymentIntents with manual capture.

    The payment source is a PaymentMethod id collected by the client.
    """

    def __init__(self, api_key: str, currency: str):
        stripe.api_key = api_key
        self.currency = currency.lower()

    def authorize(self, amount_minor: int, source: str, idempotency_key: str) -> str:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=self.currency,
                payment_method=source,
                capture_method='manual',
                confirm=True,
                automatic_payment_methods={'enabled': True, 'allow_redirects': 'never'},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            raise ProcessorError(e.user_message or str(e), declined=True) from e
        except stripe.StripeError as e:
            raise ProcessorError(str(e)) from e

        # With capture_method='manual', a successful hold is 'requires_capture'
        if intent.status != 'requires_capture':
            raise ProcessorError(
                f"Payment could not be authorized (status {intent.status}).",
                declined=True,
            )
        return intent.id

    def capture(self, reference: str, idempotency_key: str) -> str:
        try:
            intent = stripe.PaymentIntent.capture(reference, idempotency_key=idempotency_key)
        except stripe.StripeError as e:
            raise ProcessorError(str(e)) from e
        # StripeObject is not a dict; latest_charge may be absent on older API versions
        return getattr(intent, 'latest_charge', None) or intent.id

    def void(self, reference: str, idempotency_key: str) -> None:
        try:
            stripe.PaymentIntent.cancel(reference, idempotency_key=idempotency_key)
        except stripe.StripeError as e:
            raise ProcessorError(str(e)) from e

    def refund(self, reference: str, amount_minor: int, idempotency_key: str) -> str:
        try:
            refund = stripe.Refund.create(
                payment_intent=reference,
                amount=amount_minor,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise ProcessorError(str(e)) from e
        return refund.id


class SimulatedProcessor:
    """
    In-process stand-in for the payment processor, used for local runs and tests.

    Honours idempotency keys the way a real processor does. Sources starting
    with 'tok_decline' are declined. Operations named in `fail_operations`
    ('authorize', 'capture', 'void', 'refund') raise ProcessorError.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._results: Dict[str, str] = {}
        self.holds: Dict[str, Dict] = {}
        self.fail_operations: Set[str] = set()
        self.calls: Dict[str, int] = {'authorize': 0, 'capture': 0, 'void': 0, 'refund': 0}

    def _check(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self.fail_operations:
            raise ProcessorError(f"Simulated {operation} failure")

    def authorize(self, amount_minor: int, source: str, idempotency_key: str) -> str:
        with self._lock:
            if idempotency_key in self._results:
                return self._results[idempotency_key]
            self._check('authorize')
            if source.startswith('tok_decline'):
                raise ProcessorError("Your card was declined.", declined=True)
            reference = f"sim_auth_{uuid.uuid4().hex[:16]}"
            self.holds[reference] = {'amount': amount_minor, 'status': 'authorized', 'refunded': 0}
            self._results[idempotency_key] = reference
            return reference

    def capture(self, reference: str, idempotency_key: str) -> str:
        with self._lock:
            if idempotency_key in self._results:
                return self._results[idempotency_key]
            self._check('capture')
            hold = self.holds.get(reference)
            if not hold or hold['status'] != 'authorized':
                raise ProcessorError(f"Authorization {reference} cannot be captured")
            hold['status'] = 'captured'
            capture_ref = f"sim_charge_{uuid.uuid4().hex[:16]}"
            self._results[idempotency_key] = capture_ref
            return capture_ref

    def void(self, reference: str, idempotency_key: str) -> None:
        with self._lock:
            if idempotency_key in self._results:
                return
            self._check('void')
            hold = self.holds.get(reference)
            if not hold or hold['status'] != 'authorized':
                raise ProcessorError(f"Authorization {reference} cannot be voided")
            hold['status'] = 'voided'
            self._results[idempotency_key] = reference

    def refund(self, reference: str, amount_minor: int, idempotency_key: str) -> str:
        with self._lock:
            if idempotency_key in self._results:
                return self._results[idempotency_key]
            self._check('refund')
            hold = self.holds.get(reference)
            if not hold or hold['status'] != 'captured':
                raise ProcessorError(f"Payment {reference} has not been captured")
            if hold['refunded'] + amount_minor > hold['amount']:
                raise ProcessorError("Refund exceeds captured amount")
            hold['refunded'] += amount_minor
            refund_ref = f"sim_refund_{uuid.uuid4().hex[:16]}"
            self._results[idempotency_key] = refund_ref
            return refund_ref


def build_processor():
    """Pick the processor backend from configuration."""
    if config.PAYMENT_PROVIDER == 'stripe':
        if not config.is_stripe_enabled():
            raise ConfigurationError(
                "PAYMENT_PROVIDER is 'stripe' but STRIPE_SECRET_KEY is not set."
            )
        return StripeProcessor(config.STRIPE_SECRET_KEY, config.CURRENCY)
    if config.PAYMENT_PROVIDER == 'simulated':
        return SimulatedProcessor()
    raise ConfigurationError(f"Unknown PAYMENT_PROVIDER '{config.PAYMENT_PROVIDER}'.")


# =============================================================================
# Gateway
# =============================================================================

class PaymentGateway:
    """Stable internal interface over whichever processor is configured."""

    def __init__(self, database: Database, processor, currency: Optional[str] = None):
        self.db = database
        self.processor = processor
        self.currency = (currency or config.CURRENCY).upper()

    def _record(self, reference: str, error_cls):
        record = self.db.get_payment_record(reference)
        if record is None:
            raise error_cls(
                f"Unknown payment authorization {reference}.",
                details={'authorization_ref': reference},
            )
        return record

    def authorize(self, amount: Decimal, payment_source: str) -> str:
        """
        Place a hold for `amount` on the payment source. No funds move.

        Raises:
            PaymentAuthorizationFailed: The processor declined or failed.
        """
        amount_minor = to_minor(amount)
        if amount_minor <= 0:
            raise ValidationError("Amount to authorize must be positive.")

        try:
            reference = self.processor.authorize(
                amount_minor, payment_source, idempotency_key=f"auth:{uuid.uuid4().hex}"
            )
        except ProcessorError as e:
            logger.warning("Authorization of %s %s failed: %s", format_amount(amount), self.currency, e)
            raise PaymentAuthorizationFailed(
                str(e) if e.declined else "The payment could not be authorized.",
                details={'declined': e.declined},
            ) from e

        try:
            self.db.create_payment_record(reference, amount_minor, self.currency, utcnow())
        except Exception:
            # Without a record nothing would ever void this hold
            logger.exception("Could not record authorization %s; releasing the hold", reference)
            try:
                self.processor.void(reference, idempotency_key=f"void:{reference}")
            except ProcessorError as e:
                raise VoidFailed(
                    "The payment hold could not be recorded or released.",
                    details={'authorization_ref': reference},
                    outcome=OUTCOME_PARTIAL,
                ) from e
            raise

        logger.info("Authorized %s %s as %s", format_amount(amount), self.currency, reference)
        return reference

    def capture(self, authorization_ref: str) -> str:
        """
        Turn a hold into a charge. Capturing an already captured
        authorization returns the original capture reference.

        Raises:
            PaymentCaptureFailed: The hold was voided, or the processor failed.
        """
        record = self._record(authorization_ref, PaymentCaptureFailed)
        if record['status'] in ('captured', 'refunded'):
            return record['capture_ref']
        if record['status'] == 'voided':
            raise PaymentCaptureFailed(
                "The payment hold was already released and cannot be charged.",
                details={'authorization_ref': authorization_ref},
            )

        try:
            capture_ref = self.processor.capture(
                authorization_ref, idempotency_key=f"capture:{authorization_ref}"
            )
        except ProcessorError as e:
            logger.error("Capture of %s failed: %s", authorization_ref, e)
            raise PaymentCaptureFailed(
                "The payment could not be captured.",
                details={'authorization_ref': authorization_ref},
            ) from e

        if not self.db.resolve_payment_record(
            authorization_ref, 'authorized', 'captured', utcnow(), capture_ref=capture_ref
        ):
            # Another caller resolved it first; report what they recorded
            return self.capture(authorization_ref)

        logger.info("Captured %s as %s", authorization_ref, capture_ref)
        return capture_ref

    def void(self, authorization_ref: str) -> bool:
        """
        Release a hold without charging. Voiding twice is a no-op.

        Raises:
            VoidFailed: The hold was already captured, or the processor failed.
        """
        record = self._record(authorization_ref, VoidFailed)
        if record['status'] == 'voided':
            return True
        if record['status'] != 'authorized':
            raise VoidFailed(
                "The payment was already captured and cannot be released.",
                details={'authorization_ref': authorization_ref},
            )

        try:
            self.processor.void(authorization_ref, idempotency_key=f"void:{authorization_ref}")
        except ProcessorError as e:
            logger.error("Void of %s failed: %s", authorization_ref, e)
            raise VoidFailed(
                "The payment hold could not be released.",
                details={'authorization_ref': authorization_ref},
            ) from e

        if not self.db.resolve_payment_record(authorization_ref, 'authorized', 'voided', utcnow()):
            return self.void(authorization_ref)

        logger.info("Voided %s", authorization_ref)
        return True

    def refund(self, authorization_ref: str, amount: Decimal) -> str:
        """
        Return part or all of a captured payment. One refund per authorization;
        repeating it returns the original refund reference.

        Raises:
            RefundFailed: Nothing was captured, the amount is too large,
                or the processor failed.
        """
        record = self._record(authorization_ref, RefundFailed)
        if record['status'] == 'refunded':
            return record['refund_ref']

        amount_minor = to_minor(amount)
        details = {'authorization_ref': authorization_ref, 'amount': format_amount(amount)}
        if record['status'] != 'captured':
            raise RefundFailed("Only a captured payment can be refunded.", details=details)
        if amount_minor <= 0 or amount_minor > record['amount_minor']:
            raise RefundFailed("Refund amount is outside the captured amount.", details=details)

        try:
            refund_ref = self.processor.refund(
                authorization_ref, amount_minor, idempotency_key=f"refund:{authorization_ref}"
            )
        except ProcessorError as e:
            logger.error("Refund of %s on %s failed: %s", format_amount(amount), authorization_ref, e)
            raise RefundFailed(
                "The refund could not be issued.",
                details=details,
                outcome=OUTCOME_PARTIAL,
            ) from e

        if not self.db.resolve_payment_record(
            authorization_ref, 'captured', 'refunded', utcnow(),
            refund_ref=refund_ref, refund_minor=amount_minor,
        ):
            return self.refund(authorization_ref, amount)

        logger.info("Refunded %s on %s as %s", format_amount(amount), authorization_ref, refund_ref)
        return refund_ref
