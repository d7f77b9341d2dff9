"""Tests for SNS event handling."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from dripline.api.app import app
from dripline.api.routes import events
from dripline.core.config import settings
from dripline.db import models
from dripline.db.models import DeliveryStatus, SubscriptionStatus
from dripline.db.session import get_db
from dripline.services import subscriptions
from dripline.services.scheduler import run_due_subscriptions
from dripline.utils import sns as sns_utils

from conftest import T0

TOPIC = "arn:aws:sns:us-east-1:123456789012:ses-events"


def _notification_payload(message: dict) -> dict:
    return {
        "Type": "Notification",
        "MessageId": "sns-message-id",
        "TopicArn": TOPIC,
        "Message": json.dumps(message),
        "SignatureVersion": "1",
        "Signature": "dGVzdA==",
        "SigningCertURL": "https://sns.us-east-1.amazonaws.com/SimpleNotificationService-test.pem",
    }


@pytest.fixture
def open_topic(monkeypatch):
    monkeypatch.setattr(settings, "sns_verify_signatures", False)
    monkeypatch.setattr(settings, "sns_allowed_topic_arns", [TOPIC])


@pytest.fixture
def sent_delivery(db, world, make_campaign, transport):
    campaign = make_campaign()
    subscription = subscriptions.enroll(db, campaign.id, world.project.id, now=T0)
    run_due_subscriptions(db, transport, now=T0)
    delivery = db.query(models.Delivery).filter(models.Delivery.subscription_id == subscription.id).one()
    assert delivery.provider_id == "email-msg-1"
    return delivery


def _post(db, message):
    return events.handle_sns_notification(_notification_payload(message), db=db)


def test_verify_sns_signature_happy(monkeypatch):
    payload = _notification_payload({"notificationType": "Delivery", "mail": {"messageId": "mid"}})
    calls = []

    def fake_fetch(url, timeout_seconds):  # noqa: ARG001
        return b"cert"

    def fake_run(args, input_bytes, timeout_seconds):  # noqa: ARG001
        calls.append(args)
        if "x509" in args:
            return SimpleNamespace(returncode=0, stdout=b"PUBKEY")
        return SimpleNamespace(returncode=0, stdout=b"")

    monkeypatch.setattr(sns_utils, "_fetch_url", fake_fetch)
    monkeypatch.setattr(sns_utils, "_run_openssl", fake_run)
    ok, _ = sns_utils.verify_sns_signature(payload, 3)
    assert ok is True
    assert "-sha1" in calls[-1]


def test_verify_sns_signature_fail(monkeypatch):
    payload = _notification_payload({"notificationType": "Delivery", "mail": {"messageId": "mid"}})

    def fake_fetch(url, timeout_seconds):  # noqa: ARG001
        return b"cert"

    def fake_run(args, input_bytes, timeout_seconds):  # noqa: ARG001
        return SimpleNamespace(returncode=1, stdout=b"")

    monkeypatch.setattr(sns_utils, "_fetch_url", fake_fetch)
    monkeypatch.setattr(sns_utils, "_run_openssl", fake_run)
    ok, _ = sns_utils.verify_sns_signature(payload, 3)
    assert ok is False


@pytest.mark.parametrize(
    "url",
    [
        "http://sns.us-east-1.amazonaws.com/SimpleNotificationService-x.pem",
        "https://evil.example.com/SimpleNotificationService-x.pem",
        "https://sns.us-east-1.amazonaws.com.evil.example/SimpleNotificationService-x.pem",
        "https://sns.us-east-1.amazonaws.com/other.pem",
    ],
)
def test_cert_url_must_be_sns(url):
    allowed, _ = sns_utils.is_allowed_cert_url(url)
    assert allowed is False


def test_string_to_sign_skips_missing_fields():
    payload = {"Type": "Notification", "MessageId": "m", "Message": "hi", "TopicArn": "t", "Timestamp": "ts"}
    assert sns_utils.string_to_sign(payload) == "Message\nhi\nMessageId\nm\nTimestamp\nts\nTopicArn\nt\nType\nNotification\n"


def test_subscription_confirmation(db, monkeypatch, open_topic):
    def fake_confirm(url, timeout_seconds):  # noqa: ARG001
        return True

    monkeypatch.setattr(events, "confirm_subscription", fake_confirm)

    payload = {
        "Type": "SubscriptionConfirmation",
        "MessageId": "sns-message-id",
        "TopicArn": TOPIC,
        "SubscribeURL": "https://sns.us-east-1.amazonaws.com/?Action=ConfirmSubscription",
    }
    result = events.handle_sns_notification(payload, db=db)
    assert result["status"] == "confirmed"


def test_confirmation_refuses_foreign_hosts():
    assert sns_utils.confirm_subscription("https://example.com/confirm", 1) is False


def test_disallowed_topic_is_forbidden(db, monkeypatch):
    monkeypatch.setattr(settings, "sns_allowed_topic_arns", ["arn:aws:sns:us-east-1:123456789012:other"])

    with pytest.raises(HTTPException) as excinfo:
        _post(db, {"notificationType": "Delivery", "mail": {"messageId": "mid"}})
    assert excinfo.value.status_code == 403


def test_bad_signature_is_forbidden(db, monkeypatch):
    monkeypatch.setattr(settings, "sns_verify_signatures", True)
    monkeypatch.setattr(settings, "sns_allowed_topic_arns", [])
    monkeypatch.setattr(events, "verify_sns_signature", lambda payload, timeout: (False, "Signature verification failed"))

    with pytest.raises(HTTPException) as excinfo:
        _post(db, {"notificationType": "Delivery", "mail": {"messageId": "mid"}})
    assert excinfo.value.status_code == 403
    assert db.query(models.DeliveryEvent).count() == 0


def test_notification_without_message_id_is_rejected(db, open_topic):
    with pytest.raises(HTTPException) as excinfo:
        _post(db, {"notificationType": "Delivery", "mail": {}})
    assert excinfo.value.status_code == 400


def test_delivery_notification_updates_delivery(db, open_topic, sent_delivery):
    message = {
        "notificationType": "Delivery",
        "mail": {"messageId": "email-msg-1", "destination": ["ada@example.com"]},
        "delivery": {"timestamp": "2026-01-05T15:00:05.000Z", "smtpResponse": "250 Ok"},
    }

    result = _post(db, message)

    assert result["status"] == "delivered"
    db.refresh(sent_delivery)
    assert sent_delivery.status == DeliveryStatus.DELIVERED
    event = db.query(models.DeliveryEvent).one()
    assert event.delivery_id == sent_delivery.id
    assert event.sns_message_id == "sns-message-id"
    assert event.signature_verified is None


def test_late_send_event_does_not_undo_delivery(db, open_topic, sent_delivery):
    _post(db, {"notificationType": "Delivery", "mail": {"messageId": "email-msg-1"}})
    _post(db, {"eventType": "Send", "mail": {"messageId": "email-msg-1"}})

    db.refresh(sent_delivery)
    assert sent_delivery.status == DeliveryStatus.DELIVERED
    assert db.query(models.DeliveryEvent).count() == 2


def test_event_persisted_without_delivery(db, open_topic):
    message = {
        "notificationType": "Bounce",
        "mail": {"messageId": "missing-delivery"},
        "bounce": {"timestamp": "2026-01-05T00:00:00.000Z", "bounceType": "Permanent"},
    }

    result = _post(db, message)

    assert result["status"] == "bounced"
    event = db.query(models.DeliveryEvent).first()
    assert event is not None
    assert event.delivery_id is None


def test_permanent_bounce_unsubscribes(db, open_topic, sent_delivery):
    message = {
        "notificationType": "Bounce",
        "mail": {"messageId": "email-msg-1"},
        "bounce": {"timestamp": "2026-01-05T16:00:00.000Z", "bounceType": "Permanent", "bounceSubType": "General"},
    }

    assert _post(db, message)["status"] == "bounced"

    db.refresh(sent_delivery)
    assert sent_delivery.status == DeliveryStatus.BOUNCED
    subscription = db.get(models.Subscription, sent_delivery.subscription_id)
    assert subscription.status == SubscriptionStatus.UNSUBSCRIBED
    assert subscription.end_reason == "BOUNCED"


def test_transient_bounce_keeps_subscription(db, open_topic, sent_delivery):
    message = {
        "notificationType": "Bounce",
        "mail": {"messageId": "email-msg-1"},
        "bounce": {"bounceType": "Transient", "bounceSubType": "MailboxFull"},
    }

    assert _post(db, message)["status"] == "soft_bounce"

    db.refresh(sent_delivery)
    assert sent_delivery.status == DeliveryStatus.SENT
    assert db.get(models.Subscription, sent_delivery.subscription_id).status == SubscriptionStatus.ACTIVE


def test_complaint_unsubscribes(db, open_topic, sent_delivery):
    message = {
        "notificationType": "Complaint",
        "mail": {"messageId": "email-msg-1"},
        "complaint": {"timestamp": "2026-01-06T00:00:00.000Z"},
    }

    assert _post(db, message)["status"] == "complaint"

    subscription = db.get(models.Subscription, sent_delivery.subscription_id)
    assert subscription.status == SubscriptionStatus.UNSUBSCRIBED
    assert subscription.end_reason == "COMPLAINT"


def test_open_and_click_are_recorded(db, open_topic, sent_delivery):
    _post(db, {"eventType": "Click", "mail": {"messageId": "email-msg-1"}, "click": {"timestamp": "2026-01-05T18:00:00Z"}})

    db.refresh(sent_delivery)
    assert sent_delivery.clicked_at is not None
    assert sent_delivery.opened_at == sent_delivery.clicked_at


def test_signature_check_runs_off_the_event_loop(db, monkeypatch):
    monkeypatch.setattr(settings, "sns_allowed_topic_arns", [TOPIC])
    monkeypatch.setattr(settings, "sns_verify_signatures", True)
    loop_running = []

    def fake_verify(payload, timeout_seconds):  # noqa: ARG001
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop_running.append(False)
        else:
            loop_running.append(True)
        return False, "bad signature"

    monkeypatch.setattr(events, "verify_sns_signature", fake_verify)
    app.dependency_overrides[get_db] = lambda: db
    try:
        response = TestClient(app).post("/events/sns", json=_notification_payload({"notificationType": "Delivery"}))
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    assert loop_running == [False]
