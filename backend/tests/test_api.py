"""API route tests"""
import json
from unittest.mock import patch

import pytest
from fastapi import status

from conftest import KEY_SECRET, login, make_payment_record, make_subscription
from sadqa.core.errors import GatewayUnavailable, InvalidTransition
from sadqa.core.signatures import sign_payload
from sadqa.models.payment_record import PaymentRecord
from sadqa.models.subscription import Subscription


@pytest.mark.critical
class TestAuthentication:
    """Test authentication and admin-only routes"""

    def test_protected_routes_require_auth(self, client):
        """Test that protected endpoints return 401 without a session"""
        assert client.get("/api/sadqa-subscriptions").status_code == status.HTTP_401_UNAUTHORIZED
        response = client.post("/api/admin/donations/recheck-payment", json={"donationId": 1})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_expired_session_rejected(self, client):
        client.cookies.set("session_id", "no-such-session")
        response = client.get("/api/sadqa-subscriptions")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert "expired" in response.json()["detail"]

    def test_admin_routes_reject_donors(self, donor_client, db_session):
        record = make_payment_record(db_session)
        response = donor_client.post("/api/admin/donations/recheck-payment", json={"donationId": record.id})
        assert response.status_code == status.HTTP_403_FORBIDDEN

        response = donor_client.patch(
            "/api/admin/sadqa-subscriptions/1/action", json={"action": "pause", "reason": "x"}
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_responses_carry_request_id(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.critical
class TestSubscriptionRoutes:
    """Test donor subscription routes"""

    def test_create_subscription(self, donor_client, fake_gateway, db_session):
        response = donor_client.post("/api/sadqa-subscriptions", json={
            "planType": "daily",
            "amount": 10000,
            "userName": "Aisha",
            "userEmail": "aisha@example.com",
        })
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["subscription"]["status"] == "pending_payment"
        assert data["subscription"]["totalCycles"] == 1200
        assert data["shortUrl"] == "https://rzp.io/i/test"

        plan_call = next(call for call in fake_gateway.calls if call[0] == "create_plan")
        assert plan_call[1:] == ("weekly", 1, 70000)
        sub_call = next(call for call in fake_gateway.calls if call[0] == "create_subscription")
        assert sub_call[3]["subscription_id"] == str(data["subscription"]["id"])

        cycle = db_session.query(PaymentRecord).filter(
            PaymentRecord.cycle_of == data["subscription"]["id"]
        ).one()
        assert cycle.status == "pending"
        assert cycle.cycle_sequence == 1

    def test_create_rejects_bad_amount(self, donor_client):
        response = donor_client.post("/api/sadqa-subscriptions", json={"planType": "monthly", "amount": 0})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_list_only_own(self, donor_client, db_session):
        make_subscription(db_session, user_id="donor_1")
        make_subscription(db_session, user_id="someone_else")
        response = donor_client.get("/api/sadqa-subscriptions")
        assert response.status_code == status.HTTP_200_OK
        assert [s["userId"] for s in response.json()["subscriptions"]] == ["donor_1"]

    def test_get_other_users_subscription_forbidden(self, donor_client, db_session):
        subscription = make_subscription(db_session, user_id="someone_else")
        response = donor_client.get(f"/api/sadqa-subscriptions/{subscription.id}")
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_get_unknown_subscription(self, donor_client):
        assert donor_client.get("/api/sadqa-subscriptions/9999").status_code == status.HTTP_404_NOT_FOUND

    def test_pause_resume_cancel(self, donor_client, fake_gateway, db_session):
        subscription = make_subscription(db_session, payment_count=1, total_paid_paise=50000)
        base = f"/api/sadqa-subscriptions/{subscription.id}"

        response = donor_client.post(f"{base}/pause", json={"reason": "Ramadan travel"})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["subscription"]["status"] == "paused"
        assert fake_gateway.called("pause_subscription") == 1

        response = donor_client.post(f"{base}/pause", json={})
        assert response.status_code == status.HTTP_409_CONFLICT

        response = donor_client.post(f"{base}/resume", json={})
        assert response.status_code == status.HTTP_200_OK
        body = response.json()["subscription"]
        assert body["status"] == "active"
        assert body["paymentCount"] == 1
        assert body["remainingCycles"] == 11

        response = donor_client.post(f"{base}/cancel", json={"reason": "done"})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["subscription"]["status"] == "cancelled"

        response = donor_client.post(f"{base}/cancel", json={})
        assert response.status_code == status.HTTP_200_OK
        assert fake_gateway.called("cancel_subscription") == 1

        detail = donor_client.get(base).json()["subscription"]
        assert [entry["action"] for entry in detail["auditLog"]] == [
            "subscription_paused", "subscription_resumed", "subscription_cancelled"
        ]

    def test_gateway_failure_leaves_state(self, donor_client, fake_gateway, db_session):
        subscription = make_subscription(db_session)

        async def unavailable(subscription_id):
            raise GatewayUnavailable("Razorpay returned 503", status_code=503)

        fake_gateway.pause_subscription = unavailable
        response = donor_client.post(f"/api/sadqa-subscriptions/{subscription.id}/pause", json={})
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

        db_session.expire_all()
        assert db_session.get(Subscription, subscription.id).status == "active"

    def test_failed_gateway_setup_leaves_no_subscription(self, donor_client, fake_gateway, db_session):
        async def unavailable(*args, **kwargs):
            raise GatewayUnavailable("Razorpay returned 503", status_code=503)

        fake_gateway.create_plan = unavailable
        response = donor_client.post("/api/sadqa-subscriptions", json={"planType": "monthly", "amount": 50000})
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

        db_session.expire_all()
        assert db_session.query(Subscription).count() == 0
        assert db_session.query(PaymentRecord).count() == 0
        assert donor_client.get("/api/sadqa-subscriptions").json() == {"subscriptions": []}

    def test_local_race_after_gateway_change_is_captured(self, donor_client, fake_gateway, db_session):
        subscription = make_subscription(db_session)

        def lose_race(db, subscription_id, reason, actor):
            raise InvalidTransition("Subscription changed concurrently", current_state="active", event="pause")

        with patch("sadqa.services.subscription_state.pause", side_effect=lose_race), \
                patch("sadqa.services.subscription_service.capture_exception") as capture:
            response = donor_client.post(f"/api/sadqa-subscriptions/{subscription.id}/pause", json={})

        assert response.status_code == status.HTTP_409_CONFLICT
        assert fake_gateway.called("pause_subscription") == 1
        capture.assert_called_once()
        assert capture.call_args.args[1] == "subscription-gateway-drift"
        assert capture.call_args.kwargs["subscription_id"] == subscription.id


@pytest.mark.high
class TestAdminSubscriptionActions:
    """Test admin subscription actions"""

    def test_action_appends_notes(self, admin_client, db_session):
        subscription = make_subscription(db_session, user_id="donor_9")
        response = admin_client.patch(
            f"/api/admin/sadqa-subscriptions/{subscription.id}/action",
            json={"action": "pause", "reason": "Donor request by phone", "adminNotes": "Called on Monday"}
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["subscription"]["status"] == "paused"
        assert data["subscription"]["notes"] == "[Admin admin_1]: Called on Monday"
        assert data["message"] == "Subscription pause successful"

    def test_reason_required(self, admin_client, db_session):
        subscription = make_subscription(db_session)
        response = admin_client.patch(
            f"/api/admin/sadqa-subscriptions/{subscription.id}/action",
            json={"action": "cancel", "reason": ""}
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_cancel_already_cancelled(self, admin_client, db_session):
        subscription = make_subscription(db_session, status="cancelled")
        response = admin_client.patch(
            f"/api/admin/sadqa-subscriptions/{subscription.id}/action",
            json={"action": "cancel", "reason": "duplicate"}
        )
        assert response.status_code == status.HTTP_409_CONFLICT

    def test_sync(self, admin_client, fake_gateway, db_session):
        subscription = make_subscription(db_session, razorpay_subscription_id="sub_api_sync")
        fake_gateway.subscriptions["sub_api_sync"] = {"id": "sub_api_sync", "status": "cancelled"}
        response = admin_client.post(f"/api/admin/sadqa-subscriptions/{subscription.id}/sync")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["currentStatus"] == "cancelled"


@pytest.mark.critical
class TestAdminDonationRoutes:
    """Test payment reconciliation and audit routes"""

    def test_recheck_unknown_donation(self, admin_client):
        response = admin_client.post("/api/admin/donations/recheck-payment", json={"donationId": 9999})
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_recheck_updates_record(self, admin_client, fake_gateway, db_session):
        record = make_payment_record(db_session, razorpay_payment_id="pay_api")
        fake_gateway.payments["pay_api"] = {"id": "pay_api", "status": "captured"}

        response = admin_client.post("/api/admin/donations/recheck-payment", json={"donationId": record.id})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["previousStatus"] == "pending"
        assert data["currentStatus"] == "completed"

        # the recheck wrote through its own session
        db_session.expire_all()
        detail = admin_client.get(f"/api/admin/donations/{record.id}").json()["donation"]
        assert detail["status"] == "completed"
        assert len(detail["paymentRecheckHistory"]) == 1
        assert detail["paymentRecheckHistory"][0]["performedBy"] == "admin:admin_1"
        assert [entry["action"] for entry in detail["auditLog"]] == ["payment_rechecked"]

    def test_recheck_without_payment_id(self, admin_client, db_session):
        record = make_payment_record(db_session)
        response = admin_client.post("/api/admin/donations/recheck-payment", json={"donationId": record.id})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False
        assert response.json()["error"] == "No Razorpay payment ID found"

    def test_bulk_recheck_streams_ndjson(self, admin_client, fake_gateway, db_session):
        paid = make_payment_record(db_session, razorpay_payment_id="pay_bulk")
        unpaid = make_payment_record(db_session)
        fake_gateway.payments["pay_bulk"] = {"id": "pay_bulk", "status": "captured"}

        response = admin_client.post(
            "/api/admin/donations/bulk-recheck-payment",
            json={"donationIds": [paid.id, unpaid.id]}
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("application/x-ndjson")

        events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
        assert events[0]["type"] == "progress"
        assert events[0]["completed"] == 0
        assert events[-1]["type"] == "complete"
        assert events[-1]["summary"] == {"total": 2, "successful": 1, "failed": 1}

    def test_bulk_recheck_requires_ids(self, admin_client):
        response = admin_client.post("/api/admin/donations/bulk-recheck-payment", json={"donationIds": []})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_audit_approval_requires_completed_payment(self, admin_client, db_session):
        record = make_payment_record(db_session)
        response = admin_client.post(f"/api/admin/donations/{record.id}/audit", json={"approve": True})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_audit_approval_makes_public(self, admin_client, db_session):
        record = make_payment_record(
            db_session, status="completed", payment_verified=True, is_visible_in_reports=True
        )
        response = admin_client.post(
            f"/api/admin/donations/{record.id}/audit", json={"approve": True, "notes": "Bank statement matches"}
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()["donation"]
        assert data["auditStatus"] == "verified"
        assert data["isVisibleInPublic"] is True

    def test_refund(self, admin_client, fake_gateway, db_session):
        record = make_payment_record(
            db_session, status="completed", payment_verified=True, razorpay_payment_id="pay_refund"
        )
        response = admin_client.post(f"/api/admin/donations/{record.id}/refund", json={})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["donation"]["status"] == "refunded"
        assert response.json()["donation"]["isVisibleInReports"] is False
        assert fake_gateway.called("refund_payment") == 1

    def test_refund_pending_rejected(self, admin_client, fake_gateway, db_session):
        record = make_payment_record(db_session, razorpay_payment_id="pay_pending")
        response = admin_client.post(f"/api/admin/donations/{record.id}/refund", json={})
        assert response.status_code == status.HTTP_409_CONFLICT
        assert fake_gateway.called("refund_payment") == 0


@pytest.mark.high
class TestDonationRoutes:
    """Test one-off donation checkout"""

    def test_guest_donation_and_checkout(self, client, db_session):
        response = client.post("/api/donations", json={"amount": 25000, "donorName": "Guest"})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        donation_id = data["donation"]["id"]
        order_id = data["order"]["id"]
        assert data["donation"]["razorpayOrderId"] == order_id
        assert data["keyId"] == "rzp_test_key"

        signature = sign_payload(f"{order_id}|pay_checkout", KEY_SECRET)
        response = client.post(f"/api/donations/{donation_id}/confirm", json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_checkout",
            "razorpay_signature": signature,
        })
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["donation"]["status"] == "completed"
        assert response.json()["donation"]["isVisibleInPublic"] is False

    def test_checkout_bad_signature(self, client):
        data = client.post("/api/donations", json={"amount": 25000}).json()
        response = client.post(f"/api/donations/{data['donation']['id']}/confirm", json={
            "razorpay_order_id": data["order"]["id"],
            "razorpay_payment_id": "pay_checkout",
            "razorpay_signature": "0" * 64,
        })
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_logged_in_donation_records_user(self, donor_client, db_session):
        data = donor_client.post("/api/donations", json={"amount": 1000}).json()
        record = db_session.get(PaymentRecord, data["donation"]["id"])
        assert record.payer_user_id == "donor_1"


@pytest.mark.medium
class TestMonitoring:
    """Test health and metrics endpoints"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "healthy", "checks": {"database": "ok", "redis": "ok"}}

    def test_health_degraded_without_redis(self, client, mock_redis):
        from redis.exceptions import ConnectionError as RedisConnectionError
        with patch.object(mock_redis, "ping", side_effect=RedisConnectionError("refused")):
            response = client.get("/health")
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["checks"]["redis"] == "unavailable"

    def test_metrics(self, client, db_session):
        make_subscription(db_session)
        response = client.get("/metrics")
        assert response.status_code == status.HTTP_200_OK
        assert 'sadqa_subscriptions{status="active"} 1.0' in response.text

    def test_login_helper_switches_identity(self, client, db_session):
        subscription = make_subscription(db_session, user_id="donor_2")
        login(client, "donor_2")
        assert client.get(f"/api/sadqa-subscriptions/{subscription.id}").status_code == status.HTTP_200_OK
