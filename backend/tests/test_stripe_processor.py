from types import SimpleNamespace

import pytest
import stripe

from payments import ProcessorError, StripeProcessor


class StripeCalls(list):
    """Records Stripe API calls instead of sending them."""

    def __init__(self, monkeypatch):
        super().__init__()
        self.monkeypatch = monkeypatch

    def patch(self, target, name, result):
        def call(*args, **kwargs):
            self.append((name, args, kwargs))
            if isinstance(result, Exception):
                raise result
            return result
        self.monkeypatch.setattr(target, name, call)


@pytest.fixture
def stripe_processor(monkeypatch):
    monkeypatch.setattr(stripe, "api_key", None)
    return StripeProcessor("sk_test_123", "GBP")


@pytest.fixture
def calls(monkeypatch):
    return StripeCalls(monkeypatch)


def test_authorize_places_manual_capture_hold(stripe_processor, calls):
    calls.patch(stripe.PaymentIntent, "create", SimpleNamespace(id="pi_1", status="requires_capture"))

    assert stripe_processor.authorize(4000, "pm_card_visa", idempotency_key="auth:abc") == "pi_1"
    _, _, kwargs = calls[0]
    assert kwargs["amount"] == 4000
    assert kwargs["currency"] == "gbp"
    assert kwargs["capture_method"] == "manual"
    assert kwargs["confirm"] is True
    assert kwargs["idempotency_key"] == "auth:abc"


def test_authorize_without_hold_is_declined(stripe_processor, calls):
    calls.patch(stripe.PaymentIntent, "create", SimpleNamespace(id="pi_1", status="requires_action"))
    with pytest.raises(ProcessorError) as exc:
        stripe_processor.authorize(4000, "pm_card_visa", idempotency_key="auth:abc")
    assert exc.value.declined is True


def test_card_error_is_declined(stripe_processor, calls):
    calls.patch(stripe.PaymentIntent, "create",
                stripe.CardError("Your card was declined.", None, "card_declined"))
    with pytest.raises(ProcessorError) as exc:
        stripe_processor.authorize(4000, "pm_card_chargeDeclined", idempotency_key="auth:abc")
    assert exc.value.declined is True


def test_capture_returns_latest_charge(stripe_processor, calls):
    calls.patch(stripe.PaymentIntent, "capture",
                stripe.PaymentIntent.construct_from(
                    {"id": "pi_1", "object": "payment_intent", "latest_charge": "ch_1"}, "sk_test_123",
                ))

    assert stripe_processor.capture("pi_1", idempotency_key="capture:pi_1") == "ch_1"
    name, args, kwargs = calls[0]
    assert args == ("pi_1",)
    assert kwargs["idempotency_key"] == "capture:pi_1"


def test_capture_without_charge_falls_back_to_intent(stripe_processor, calls):
    calls.patch(stripe.PaymentIntent, "capture", SimpleNamespace(id="pi_1"))
    assert stripe_processor.capture("pi_1", idempotency_key="capture:pi_1") == "pi_1"


def test_capture_failure_is_processor_error(stripe_processor, calls):
    calls.patch(stripe.PaymentIntent, "capture", stripe.StripeError("boom"))
    with pytest.raises(ProcessorError) as exc:
        stripe_processor.capture("pi_1", idempotency_key="capture:pi_1")
    assert exc.value.declined is False


def test_void_cancels_intent(stripe_processor, calls):
    calls.patch(stripe.PaymentIntent, "cancel", SimpleNamespace(id="pi_1", status="canceled"))
    stripe_processor.void("pi_1", idempotency_key="void:pi_1")
    assert calls[0][1] == ("pi_1",)
    assert calls[0][2]["idempotency_key"] == "void:pi_1"


def test_refund_is_partial_amount_on_intent(stripe_processor, calls):
    calls.patch(stripe.Refund, "create", SimpleNamespace(id="re_1"))

    assert stripe_processor.refund("pi_1", 2000, idempotency_key="refund:pi_1") == "re_1"
    _, _, kwargs = calls[0]
    assert kwargs == {"payment_intent": "pi_1", "amount": 2000, "idempotency_key": "refund:pi_1"}
