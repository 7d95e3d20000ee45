"""Razorpay webhook endpoint tests"""
import json
import logging
from unittest.mock import patch

import pytest

from conftest import (
    make_payment_record, make_subscription, payment_captured_event, post_webhook, subscription_event
)
from sadqa.models.payment_record import PaymentRecord
from sadqa.models.subscription import Subscription
from sadqa.models.webhook_event import WebhookEvent
from sadqa.services import subscription_state
from sadqa.services.payment_records import ENTITY_PAYMENT, ENTITY_SUBSCRIPTION, get_audit_log
from sadqa.services.webhook_ledger import get_event


def _actions(db, entity_type, entity_id):
    return [entry.action for entry in get_audit_log(db, entity_type, entity_id)]


@pytest.mark.critical
class TestWebhookSignature:
    """Test signature enforcement at the HTTP boundary"""

    def test_bad_signature_rejected(self, client, db_session):
        record = make_payment_record(db_session)
        event = payment_captured_event("evt_bad", receipt=f"donation_{record.id}")
        response = post_webhook(client, event, secret="not_the_secret")
        assert response.status_code == 400

        db_session.expire_all()
        assert db_session.get(PaymentRecord, record.id).status == "pending"
        assert db_session.query(WebhookEvent).count() == 0

    def test_missing_signature_rejected(self, client):
        body = json.dumps(payment_captured_event("evt_nosig")).encode()
        response = client.post(
            "/api/webhooks/razorpay", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_malformed_json_acknowledged(self, client, db_session):
        from sadqa.core.signatures import sign_payload
        body = b"{not json"
        response = client.post(
            "/api/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": sign_payload(body, "whsec_test_secret")}
        )
        assert response.status_code == 200
        assert db_session.query(WebhookEvent).count() == 0

    def test_missing_event_id_not_processed(self, client, db_session):
        record = make_payment_record(db_session)
        event = payment_captured_event(None, receipt=f"donation_{record.id}")
        response = post_webhook(client, event)
        assert response.status_code == 200

        db_session.expire_all()
        assert db_session.get(PaymentRecord, record.id).status == "pending"
        assert db_session.query(WebhookEvent).count() == 0


@pytest.mark.critical
class TestPaymentEvents:
    """Test one-off payment events"""

    def test_captured_by_receipt(self, client, db_session):
        record = make_payment_record(db_session)
        event = payment_captured_event(
            "evt_1", receipt=f"donation_{record.id}", order_id="order_abc", payment_id="pay_abc"
        )
        response = post_webhook(client, event)
        assert response.status_code == 200
        assert response.json() == {"received": True}

        db_session.expire_all()
        updated = db_session.get(PaymentRecord, record.id)
        assert updated.status == "completed"
        assert updated.payment_verified is True
        assert updated.razorpay_payment_id == "pay_abc"
        assert updated.razorpay_order_id == "order_abc"
        assert updated.is_visible_in_reports is True
        assert updated.is_visible_in_public is False
        assert get_event(db_session, "evt_1").processed is True

    def test_captured_by_order_id(self, client, db_session):
        record = make_payment_record(db_session, razorpay_order_id="order_known")
        response = post_webhook(client, payment_captured_event("evt_2", order_id="order_known"))
        assert response.status_code == 200
        db_session.expire_all()
        assert db_session.get(PaymentRecord, record.id).status == "completed"

    def test_duplicate_delivery_applies_once(self, client, db_session):
        record = make_payment_record(db_session)
        event = payment_captured_event("evt_dup", receipt=f"donation_{record.id}")

        first = post_webhook(client, event)
        second = post_webhook(client, event)
        assert first.status_code == 200
        assert second.status_code == 200

        db_session.expire_all()
        assert _actions(db_session, ENTITY_PAYMENT, record.id) == ["payment_verified"]
        assert db_session.query(WebhookEvent).filter(WebhookEvent.gateway_event_id == "evt_dup").count() == 1

    def test_same_payment_new_event_id_is_noop(self, client, db_session):
        record = make_payment_record(db_session)
        post_webhook(client, payment_captured_event("evt_a", receipt=f"donation_{record.id}"))
        post_webhook(client, payment_captured_event("evt_b", receipt=f"donation_{record.id}", event_type="order.paid"))

        db_session.expire_all()
        assert _actions(db_session, ENTITY_PAYMENT, record.id) == ["payment_verified"]

    def test_unknown_donation_acknowledged(self, client, db_session, caplog):
        with caplog.at_level(logging.WARNING, logger="webhooks"):
            response = post_webhook(client, payment_captured_event("evt_unknown", receipt="donation_424242"))
        assert response.status_code == 200
        assert "No payment record" in caplog.text
        assert get_event(db_session, "evt_unknown").processed is True

    def test_captured_sends_thank_you(self, client, db_session):
        record = make_payment_record(db_session)
        with patch("sadqa.services.notification_service.notify") as notify:
            post_webhook(client, payment_captured_event("evt_ty", receipt=f"donation_{record.id}"))
        notify.assert_called_once()
        kind, payload = notify.call_args.args
        assert kind == "donation_thank_you"
        assert payload["donationId"] == record.id

    def test_payment_failed(self, client, db_session):
        record = make_payment_record(db_session, razorpay_order_id="order_f")
        event = {
            "id": "evt_fail",
            "event": "payment.failed",
            "payload": {"payment": {"entity": {
                "id": "pay_f", "order_id": "order_f", "error_description": "Card declined"
            }}},
        }
        assert post_webhook(client, event).status_code == 200

        db_session.expire_all()
        updated = db_session.get(PaymentRecord, record.id)
        assert updated.status == "failed"
        assert updated.failure_reason == "Card declined"
        assert updated.is_visible_in_reports is False

    def test_failed_never_downgrades_completed(self, client, db_session):
        record = make_payment_record(
            db_session, razorpay_order_id="order_c", status="completed", payment_verified=True
        )
        event = {
            "id": "evt_late_fail",
            "event": "payment.failed",
            "payload": {"payment": {"entity": {"id": "pay_c", "order_id": "order_c"}}},
        }
        post_webhook(client, event)
        db_session.expire_all()
        assert db_session.get(PaymentRecord, record.id).status == "completed"

    def test_handler_exception_acknowledged_and_recorded(self, client, db_session):
        record = make_payment_record(db_session)
        with patch(
            "sadqa.services.webhook_service.handle_payment_captured",
            side_effect=RuntimeError("database exploded")
        ):
            response = post_webhook(client, payment_captured_event("evt_err", receipt=f"donation_{record.id}"))

        assert response.status_code == 200
        db_session.expire_all()
        ledger = get_event(db_session, "evt_err")
        assert ledger.processed is False
        assert "database exploded" in ledger.error_message
        assert db_session.get(PaymentRecord, record.id).status == "pending"

    def test_unknown_event_type_ignored(self, client, db_session):
        response = post_webhook(client, {"id": "evt_x", "event": "refund.processed", "payload": {}})
        assert response.status_code == 200
        assert get_event(db_session, "evt_x").processed is True


@pytest.mark.critical
class TestSubscriptionEvents:
    """Test subscription lifecycle events"""

    def test_activated_twice(self, client, db_session):
        subscription = make_subscription(db_session, status="pending_payment", razorpay_subscription_id="sub_gw_a")

        post_webhook(client, subscription_event("subscription.activated", "evt_act_1", "sub_gw_a"))
        post_webhook(client, subscription_event("subscription.activated", "evt_act_2", "sub_gw_a"))

        db_session.expire_all()
        updated = db_session.get(Subscription, subscription.id)
        assert updated.status == "active"
        assert updated.payment_count == 0
        assert updated.next_payment_date is not None
        assert _actions(db_session, ENTITY_SUBSCRIPTION, subscription.id) == ["subscription_activated"]

    def test_activated_found_by_notes(self, client, db_session):
        subscription = make_subscription(db_session, status="pending_payment", razorpay_subscription_id=None)
        event = subscription_event(
            "subscription.activated", "evt_notes", "sub_gw_new", local_id=subscription.id,
            current_end=1735689600
        )
        post_webhook(client, event)

        db_session.expire_all()
        updated = db_session.get(Subscription, subscription.id)
        assert updated.status == "active"
        assert updated.razorpay_subscription_id == "sub_gw_new"

    def test_charged_before_activated(self, client, db_session):
        subscription = make_subscription(db_session, status="pending_payment", razorpay_subscription_id="sub_gw_b")

        charged = subscription_event(
            "subscription.charged", "evt_chg_1", "sub_gw_b",
            payment={"id": "pay_cycle_1", "amount": 50000}
        )
        post_webhook(client, charged)
        post_webhook(client, subscription_event("subscription.activated", "evt_act_late", "sub_gw_b"))

        db_session.expire_all()
        updated = db_session.get(Subscription, subscription.id)
        assert updated.status == "active"
        assert updated.payment_count == 1
        assert updated.total_paid_paise == 50000
        assert _actions(db_session, ENTITY_SUBSCRIPTION, subscription.id) == [
            "subscription_activated", "subscription_charged"
        ]

    def test_charged_increments_counters(self, client, db_session):
        subscription = make_subscription(db_session, razorpay_subscription_id="sub_gw_c", failed_payment_count=2)
        for n in range(2):
            post_webhook(client, subscription_event(
                "subscription.charged", f"evt_c_{n}", "sub_gw_c",
                payment={"id": f"pay_c_{n}", "amount": 50000}
            ))

        db_session.expire_all()
        updated = db_session.get(Subscription, subscription.id)
        assert updated.payment_count == 2
        assert updated.total_paid_paise == 100000
        assert updated.failed_payment_count == 0
        cycles = db_session.query(PaymentRecord).filter(PaymentRecord.cycle_of == subscription.id).all()
        assert sorted(c.cycle_sequence for c in cycles) == [1, 2]

    def test_charged_after_admin_recheck_counts_once(self, admin_client, fake_gateway, db_session):
        subscription = make_subscription(db_session, razorpay_subscription_id="sub_gw_r")
        cycle = make_payment_record(
            db_session, kind="subscription_cycle", cycle_of=subscription.id, cycle_sequence=1,
            amount_paise=50000, razorpay_payment_id="pay_rc"
        )
        fake_gateway.payments["pay_rc"] = {"id": "pay_rc", "status": "captured", "amount": 50000}

        response = admin_client.post("/api/admin/donations/recheck-payment", json={"donationId": cycle.id})
        assert response.json()["currentStatus"] == "completed"
        post_webhook(admin_client, subscription_event(
            "subscription.charged", "evt_rc", "sub_gw_r",
            payment={"id": "pay_rc", "amount": 50000}
        ))

        db_session.expire_all()
        updated = db_session.get(Subscription, subscription.id)
        assert updated.payment_count == 1
        assert updated.total_paid_paise == 50000
        assert _actions(db_session, ENTITY_SUBSCRIPTION, subscription.id) == ["subscription_charged"]
        assert db_session.query(PaymentRecord).filter(PaymentRecord.cycle_of == subscription.id).count() == 1

    def test_halted_three_times_pauses(self, client, db_session):
        subscription = make_subscription(db_session, razorpay_subscription_id="sub_gw_h")
        for n in range(3):
            post_webhook(client, subscription_event("subscription.halted", f"evt_h_{n}", "sub_gw_h"))

        db_session.expire_all()
        updated = db_session.get(Subscription, subscription.id)
        assert updated.status == "paused"
        assert updated.failed_payment_count == 3
        assert updated.paused_reason == subscription_state.HALT_PAUSE_REASON

    def test_cancelled(self, client, db_session):
        subscription = make_subscription(db_session, razorpay_subscription_id="sub_gw_x")
        post_webhook(client, subscription_event("subscription.cancelled", "evt_cx", "sub_gw_x"))

        db_session.expire_all()
        updated = db_session.get(Subscription, subscription.id)
        assert updated.status == "cancelled"
        assert updated.cancelled_reason == subscription_state.GATEWAY_CANCEL_REASON
        assert updated.last_actor == "gateway"

    def test_event_for_unknown_subscription(self, client, db_session):
        response = post_webhook(client, subscription_event("subscription.cancelled", "evt_nobody", "sub_missing"))
        assert response.status_code == 200
        assert get_event(db_session, "evt_nobody").processed is True
