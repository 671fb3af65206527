# tests/unit/test_gateway.py

import hashlib
import hmac
import json

import pytest

from src.domain.exceptions import UnavailableError, ValidationFailedError, WebhookSignatureError
from src.domain.state_machine import PaymentOutcome
from src.infrastructure.payments.gateway import RazorpayGateway, hash_payload


def _body(event_type, payload):
    return json.dumps({"event": event_type, "payload": payload}).encode("utf-8")


def test_order_paid_maps_to_success():
    body = _body("order.paid", {"order": {"entity": {"id": "order_1"}}})

    notification = RazorpayGateway().parse_webhook_event(body, "evt_1")

    assert notification.external_event_id == "evt_1"
    assert notification.session_ref == "order_1"
    assert notification.outcome == PaymentOutcome.SUCCEEDED
    assert notification.payload_hash == hash_payload(body)


def test_payment_events_use_the_order_reference():
    failed = _body("payment.failed", {"payment": {"entity": {"id": "pay_1", "order_id": "order_9"}}})
    refunded = _body("refund.processed", {"payment": {"entity": {"id": "pay_1", "order_id": "order_9"}}})

    assert RazorpayGateway().parse_webhook_event(failed, "evt_2").outcome == PaymentOutcome.FAILED
    assert RazorpayGateway().parse_webhook_event(refunded, "evt_3").outcome == PaymentOutcome.REFUNDED


def test_untracked_event_types_are_skipped():
    body = _body("payment.authorized", {"payment": {"entity": {"order_id": "order_1"}}})
    assert RazorpayGateway().parse_webhook_event(body, "evt_4") is None


def test_event_without_id_or_reference_is_rejected():
    body = _body("order.paid", {"order": {"entity": {}}})

    with pytest.raises(ValidationFailedError):
        RazorpayGateway().parse_webhook_event(body, None)
    with pytest.raises(ValidationFailedError):
        RazorpayGateway().parse_webhook_event(body, "evt_5")
    with pytest.raises(ValidationFailedError):
        RazorpayGateway().parse_webhook_event(b"not json", "evt_6")


def test_signature_checks_need_configuration():
    with pytest.raises(UnavailableError):
        RazorpayGateway(webhook_secret=None).verify_webhook_signature(b"{}", "sig")
    with pytest.raises(WebhookSignatureError):
        RazorpayGateway(webhook_secret="whsec").verify_webhook_signature(b"{}", None)


def test_checkout_needs_keys():
    gateway = RazorpayGateway(key_id=None, key_secret=None)
    with pytest.raises(UnavailableError):
        gateway.create_checkout_session(1000, "EUR", "ok", "cancel", {"receipt": "b1"})


def test_signature_check_needs_only_the_webhook_secret():
    body = _body("order.paid", {"order": {"entity": {"id": "order_1"}}})
    signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
    gateway = RazorpayGateway(key_id=None, key_secret=None, webhook_secret="whsec")

    gateway.verify_webhook_signature(body, signature)
    with pytest.raises(WebhookSignatureError):
        gateway.verify_webhook_signature(body, signature[::-1])


@pytest.mark.parametrize(
    "body",
    [
        b'["order.paid"]',
        b'"order.paid"',
        b'{"event": "order.paid", "payload": ["order_1"]}',
        b'{"event": "order.paid", "payload": {"order": {"entity": "order_1"}}}',
    ],
)
def test_non_object_bodies_are_rejected(body):
    with pytest.raises(ValidationFailedError):
        RazorpayGateway().parse_webhook_event(body, "evt_7")
