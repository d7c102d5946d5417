"""
HTTP surface: subscription, usage, report admission and admin plan routes
through FastAPI's TestClient with the in-memory store.
"""
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from auth import create_access_token
from conftest import add_user, auth_headers
from models import PaymentFailure, PaymentSession
from server import app

SECRET = "sk_test_routes"


def _premium(store, user_id="user-1"):
    now = datetime.now(timezone.utc)
    store.subscriptions.docs.append({
        "user_id": user_id, "plan": "premium", "status": "active",
        "current_period_start": now - timedelta(days=1),
        "current_period_end": now + timedelta(days=29),
        "cancel_at_period_end": False,
        "settled_references": ["sub_paid_1"], "gateway_reference": "sub_paid_1",
        "metadata": {},
    })


def _mock_gateway(result):
    gateway = MagicMock()
    gateway.provider_name = "paystack"
    gateway.initiate = AsyncMock(return_value=result)
    return gateway


class TestPlansAndSubscription:

    def test_plans_public_and_sorted(self, store, client):
        response = client.get("/api/subscriptions/plans")
        assert response.status_code == 200
        names = [p["name"] for p in response.json()["plans"]]
        assert names == ["free", "premium"]

    def test_my_subscription_defaults_to_free(self, store, client):
        add_user(store)
        response = client.get("/api/subscriptions/my-subscription", headers=auth_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["subscription"]["plan"] == "free"
        assert body["subscription"]["is_premium"] is False
        assert body["usage"]["reports_limit"] == 3
        assert body["plan"]["name"] == "free"

    def test_subscribe_free(self, store, client):
        add_user(store)
        response = client.post("/api/subscriptions/subscribe", json={"plan": "free"}, headers=auth_headers())
        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "active"

    def test_subscribe_premium_requires_payment(self, store, client):
        add_user(store)
        response = client.post("/api/subscriptions/subscribe", json={"plan": "premium"}, headers=auth_headers())
        assert response.status_code == 400
        assert response.json()["requiresPayment"] is True

    def test_unknown_plan_is_validation_error(self, store, client):
        add_user(store)
        response = client.post("/api/subscriptions/subscribe", json={"plan": "gold"}, headers=auth_headers())

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Validation failed"
        assert body["errors"][0]["field"] == "plan"
        assert body["request_id"]

    def test_unauthenticated_is_401(self, store, client):
        assert client.get("/api/subscriptions/my-subscription").status_code == 401

    def test_sub_claim_identifies_user(self, store, client):
        add_user(store)
        token = create_access_token({"sub": "user-1"})
        response = client.get("/api/usage", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_token_without_user_is_401(self, store, client):
        token = create_access_token({"role": "admin"})
        response = client.get("/api/usage", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_token_for_unknown_user_is_401(self, store, client):
        response = client.get("/api/usage", headers=auth_headers("nobody"))
        assert response.status_code == 401

    def test_cancel_on_free_plan_rejected(self, store, client):
        add_user(store)
        response = client.post("/api/subscriptions/cancel", headers=auth_headers())
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_cancel_then_reactivate_premium(self, store, client):
        add_user(store)
        _premium(store)

        cancelled = client.post("/api/subscriptions/cancel", headers=auth_headers())
        assert cancelled.status_code == 200
        assert cancelled.json()["subscription"]["cancel_at_period_end"] is True
        assert cancelled.json()["subscription"]["is_premium"] is True

        reactivated = client.post("/api/subscriptions/reactivate", headers=auth_headers())
        assert reactivated.status_code == 200
        assert reactivated.json()["subscription"]["cancel_at_period_end"] is False


class TestInitiatePayment:

    def test_card_checkout_returns_redirect(self, store, client):
        add_user(store)
        gateway = _mock_gateway(PaymentSession(
            correlation_id="sub_ref_1", checkout_reference="ac_1", provider="paystack",
            redirect_url="https://checkout.paystack.com/ac_1",
        ))

        with patch("services.payment_gateway.get_payment_gateway", return_value=gateway):
            response = client.post(
                "/api/subscriptions/initiate-payment",
                json={"plan": "premium", "paymentMethod": "card"},
                headers=auth_headers(),
            )

        assert response.status_code == 200
        payment = response.json()["payment"]
        assert payment["correlationId"] == "sub_ref_1"
        assert payment["redirectUrl"] == "https://checkout.paystack.com/ac_1"
        sent = gateway.initiate.call_args.args[0]
        assert sent.amount == Decimal("500")
        assert sent.metadata == {"user_id": "user-1", "plan": "premium", "payment_method": "card"}

    def test_missing_credentials_is_503(self, store, client, monkeypatch):
        add_user(store)
        monkeypatch.setenv("PAYMENT_GATEWAY", "paystack")
        monkeypatch.delenv("PAYSTACK_SECRET_KEY", raising=False)

        response = client.post(
            "/api/subscriptions/initiate-payment", json={"plan": "premium"}, headers=auth_headers(),
        )

        assert response.status_code == 503
        assert response.json()["error_code"] == "GATEWAY_NOT_CONFIGURED"

    def test_unknown_gateway_name_is_503(self, store, client, monkeypatch):
        add_user(store)
        monkeypatch.setenv("PAYMENT_GATEWAY", "mystery")
        response = client.post(
            "/api/subscriptions/initiate-payment", json={"plan": "premium"}, headers=auth_headers(),
        )
        assert response.status_code == 503

    def test_provider_timeout_is_502(self, store, client):
        add_user(store)
        gateway = _mock_gateway(PaymentFailure(reason_message="timeout", retryable=True))
        with patch("services.payment_gateway.get_payment_gateway", return_value=gateway):
            response = client.post(
                "/api/subscriptions/initiate-payment", json={"plan": "premium"}, headers=auth_headers(),
            )
        assert response.status_code == 502
        assert response.json()["retryable"] is True

    def test_free_plan_needs_no_payment(self, store, client):
        add_user(store)
        response = client.post(
            "/api/subscriptions/initiate-payment", json={"plan": "free"}, headers=auth_headers(),
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "NO_PAYMENT_REQUIRED"


class TestWebhookRoute:

    def _signed(self, user_id="user-1", reference="sub_ref_w", secret=SECRET):
        body = json.dumps({
            "event": "charge.success",
            "data": {
                "reference": reference, "status": "success", "amount": 50000, "currency": "KES",
                "metadata": {"user_id": user_id, "plan": "premium"},
            },
        }).encode()
        signature = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
        return body, {"x-paystack-signature": signature, "Content-Type": "application/json"}

    def test_valid_webhook_activates_premium(self, store, client, monkeypatch):
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", SECRET)
        monkeypatch.delenv("PAYSTACK_WEBHOOK_SECRET", raising=False)
        add_user(store)
        body, headers = self._signed()

        response = client.post("/api/subscriptions/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["received"] is True
        me = client.get("/api/subscriptions/my-subscription", headers=auth_headers())
        assert me.json()["subscription"]["is_premium"] is True

    def test_bad_signature_is_400(self, store, client, monkeypatch):
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", SECRET)
        add_user(store)
        body, headers = self._signed(secret="wrong")

        response = client.post("/api/subscriptions/webhook", content=body, headers=headers)

        assert response.status_code == 400
        assert store.subscriptions.docs == []

    def test_unknown_user_still_acknowledged(self, store, client, monkeypatch):
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", SECRET)
        body, headers = self._signed(user_id="ghost")

        response = client.post("/api/subscriptions/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert store.subscriptions.docs == []


class TestUsageAndReports:

    def test_usage_endpoint(self, store, client):
        add_user(store)
        response = client.get("/api/usage", headers=auth_headers())
        assert response.status_code == 200
        usage = response.json()["usage"]
        assert usage["reports_this_month"] == 0
        assert usage["remaining_reports"] == 3

    def test_three_reports_then_upgrade_required(self, store, client):
        add_user(store)
        for expected_remaining in (2, 1, 0):
            response = client.post("/api/reports/submit", json={"title": "incident"}, headers=auth_headers())
            assert response.status_code == 201
            assert response.json()["usage"]["remainingReports"] == expected_remaining

        response = client.post("/api/reports/submit", json={"title": "incident"}, headers=auth_headers())

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["requiresUpgrade"] is True
        assert detail["reportsUsed"] == 3
        assert detail["reportsLimit"] == 3
        assert len(store.reports.docs) == 3
        assert any(l["action"] == "REPORT_ADMISSION_DENIED" for l in store.audit_logs.docs)

    def test_premium_user_not_counted(self, store, client):
        add_user(store)
        _premium(store)
        for _ in range(5):
            assert client.post("/api/reports/submit", json={}, headers=auth_headers()).status_code == 201
        assert store.users.docs[0].get("usage", {}).get("reports_this_month", 0) == 0

    def test_admin_never_counted(self, store, client):
        add_user(store, user_id="admin-1", role="admin")
        for _ in range(4):
            response = client.post("/api/reports/submit", json={}, headers=auth_headers("admin-1", "admin"))
            assert response.status_code == 201
            assert response.json()["usage"]["counted"] is False

    def test_failed_write_releases_slot(self, store):
        add_user(store)
        store.reports.insert_one = AsyncMock(side_effect=RuntimeError("write failed"))
        client = TestClient(app, raise_server_exceptions=False)

        response = client.post("/api/reports/submit", json={}, headers=auth_headers())

        assert response.status_code == 500
        assert store.users.docs[0]["usage"]["reports_this_month"] == 0

    def test_download_requires_premium(self, store, client):
        add_user(store)
        response = client.get("/api/reports/r-1/download", headers=auth_headers())
        assert response.status_code == 403
        assert response.json()["detail"]["requiresUpgrade"] is True

    def test_premium_download_own_report(self, store, client):
        add_user(store)
        _premium(store)
        store.reports.docs.append({"report_id": "r-1", "user_id": "user-1", "content": {}})

        response = client.get("/api/reports/r-1/download", headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["report"]["report_id"] == "r-1"

    def test_download_follows_operator_feature_flag(self, store, client):
        add_user(store)
        add_user(store, user_id="admin-1", role="admin")
        _premium(store)
        store.reports.docs.append({"report_id": "r-1", "user_id": "user-1", "content": {}})

        edit = client.patch(
            "/api/admin/plans/premium",
            json={"features": {"download_reports": False}},
            headers=auth_headers("admin-1", "admin"),
        )
        assert edit.status_code == 200

        response = client.get("/api/reports/r-1/download", headers=auth_headers())

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["feature"] == "download_reports"
        assert detail["currentPlan"] == "premium"
        assert detail["requiresUpgrade"] is False
        assert any(l["action"] == "FEATURE_ACCESS_DENIED" for l in store.audit_logs.docs)
        # Admins are never plan-gated
        admin = client.get("/api/reports/r-1/download", headers=auth_headers("admin-1", "admin"))
        assert admin.status_code == 200

    def test_existing_subscriber_keeps_download_after_plan_withdrawn(self, store, client):
        add_user(store)
        _premium(store)
        next(d for d in store.plans.docs if d["name"] == "premium")["is_active"] = False
        store.reports.docs.append({"report_id": "r-1", "user_id": "user-1", "content": {}})

        response = client.get("/api/reports/r-1/download", headers=auth_headers())

        assert response.status_code == 200

    def test_download_enabled_on_free_plan(self, store, client):
        add_user(store)
        next(d for d in store.plans.docs if d["name"] == "free")["features"]["download_reports"] = True
        store.reports.docs.append({"report_id": "r-1", "user_id": "user-1", "content": {}})

        response = client.get("/api/reports/r-1/download", headers=auth_headers())

        assert response.status_code == 200


class TestAdminPlans:

    def test_admin_updates_price(self, store, client):
        add_user(store, user_id="admin-1", role="admin")
        response = client.patch(
            "/api/admin/plans/premium", json={"price": 650}, headers=auth_headers("admin-1", "admin"),
        )

        assert response.status_code == 200
        assert response.json()["plan"]["price"] == 650
        public = client.get("/api/subscriptions/plans").json()["plans"]
        assert next(p for p in public if p["name"] == "premium")["price"] == 650

    def test_non_admin_forbidden(self, store, client):
        add_user(store)
        response = client.patch("/api/admin/plans/premium", json={"price": 1}, headers=auth_headers())
        assert response.status_code == 403

    def test_role_comes_from_stored_user_not_token(self, store, client):
        add_user(store)
        response = client.get("/api/admin/plans", headers=auth_headers("user-1", "admin"))
        assert response.status_code == 403

    def test_unknown_plan_404(self, store, client):
        add_user(store, user_id="admin-1", role="admin")
        response = client.patch(
            "/api/admin/plans/gold", json={"price": 1}, headers=auth_headers("admin-1", "admin"),
        )
        assert response.status_code == 404

    def test_unknown_field_rejected(self, store, client):
        add_user(store, user_id="admin-1", role="admin")
        response = client.patch(
            "/api/admin/plans/premium", json={"bogus": True}, headers=auth_headers("admin-1", "admin"),
        )
        assert response.status_code == 400

    def test_non_numeric_cap_rejected_and_catalog_stays_readable(self, store, client):
        add_user(store)
        add_user(store, user_id="admin-1", role="admin")

        response = client.patch(
            "/api/admin/plans/free",
            json={"features": {"max_reports_per_month": "unlimited"}},
            headers=auth_headers("admin-1", "admin"),
        )

        assert response.status_code == 400
        assert "max_reports_per_month" in response.json()["detail"]
        assert client.get("/api/subscriptions/plans").status_code == 200
        assert client.get("/api/subscriptions/my-subscription", headers=auth_headers()).status_code == 200
        submitted = client.post("/api/reports/submit", json={"title": "incident"}, headers=auth_headers())
        assert submitted.status_code == 201
        assert submitted.json()["usage"]["remainingReports"] == 2

    def test_stored_non_numeric_cap_falls_back_to_default(self, store, client):
        add_user(store)
        next(d for d in store.plans.docs if d["name"] == "free")["features"]["max_reports_per_month"] = "unlimited"

        assert client.get("/api/subscriptions/plans").status_code == 200
        submitted = client.post("/api/reports/submit", json={}, headers=auth_headers())

        assert submitted.status_code == 201
        assert submitted.json()["usage"]["remainingReports"] == 2

    def test_list_includes_inactive(self, store, client):
        add_user(store, user_id="admin-1", role="admin")
        next(d for d in store.plans.docs if d["name"] == "premium")["is_active"] = False

        response = client.get("/api/admin/plans", headers=auth_headers("admin-1", "admin"))

        assert response.status_code == 200
        assert len(response.json()["plans"]) == 2
