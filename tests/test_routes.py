"""
HTTP surface tests
Routes run against the per-test session and fixture services through
FastAPI dependency overrides; error kinds map to their HTTP statuses.
"""

import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from database import get_db
from models import UserType
from routes.common import get_admin_auth, get_crypto_service, get_payment_service
from services.admin_auth_service import AdminAuthService, hash_password
from services.binance_pay_service import sign_payload
from webhook_server import create_app

ADMIN_EMAIL = "admin@bountyvault.test"
ADMIN_PASSWORD = "s3cret-admin"
TRON_ADDRESS = "TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE"
ADMIN_PASSWORD_HASH = hash_password(ADMIN_PASSWORD)


@pytest.fixture
def app(db, payment_service, crypto_service):
    app = create_app(init_database=False)

    def override_db():
        yield db

    def override_admin_auth():
        return AdminAuthService(app.state.session_store, email=ADMIN_EMAIL, password_hash=ADMIN_PASSWORD_HASH)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_payment_service] = lambda: payment_service
    app.dependency_overrides[get_crypto_service] = lambda: crypto_service
    app.dependency_overrides[get_admin_auth] = override_admin_auth
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_headers(client, admin):
    response = client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


def as_user(user):
    return {"X-User-Id": str(user.id)}


class TestHealthAndErrors:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] is True

    def test_health_reports_provider_configuration(self, client, mock_stripe, mock_binance):
        mock_stripe.is_available.return_value = True
        mock_binance.is_available.return_value = False

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["providers"] == {"stripe": True, "binance_pay": False}

    def test_missing_caller_identity(self, client):
        response = client.get("/api/wallet")
        assert response.status_code == 403
        assert response.json() == {"error": "NotAuthorized", "message": "Authentication required"}

    def test_fractional_amount_is_rejected(self, client, company):
        response = client.post("/api/payments/intents", json={"amount": 100.5}, headers=as_user(company))
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_non_object_body(self, client, company):
        response = client.post("/api/escrow", json=[1, 2], headers=as_user(company))
        assert response.status_code == 400


class TestSettlementRoutes:

    def test_deposit_intent_and_confirm(self, client, company, mock_stripe):
        response = client.post(
            "/api/payments/intents",
            json={"amount": 50000},
            headers={**as_user(company), "Idempotency-Key": "topup-1"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["client_secret"] == "pi_test_123_secret_abc"
        assert body["payment_intent"]["status"] == "pending"
        assert mock_stripe.create_payment_intent.call_args.kwargs["idempotency_key"] == "topup-1"

        confirmed = client.post("/api/payments/intents/pi_test_123/confirm", headers=as_user(company))
        assert confirmed.status_code == 200
        assert confirmed.json()["payment_intent"]["status"] == "succeeded"

        wallet = client.get("/api/wallet", headers=as_user(company)).json()["wallet"]
        assert wallet["balance"] == 50000

    def test_unfinished_payment_is_409(self, client, company, mock_stripe):
        client.post("/api/payments/intents", json={"amount": 50000}, headers=as_user(company))
        mock_stripe.retrieve_payment_intent.return_value = {"id": "pi_test_123", "status": "requires_action"}

        response = client.post("/api/payments/intents/pi_test_123/confirm", headers=as_user(company))
        assert response.status_code == 409
        assert response.json()["error"] == "PaymentNotCompleted"

    def test_intent_rate_limit_is_429(self, client, company, mock_stripe):
        for n in range(10):
            mock_stripe.create_payment_intent.return_value = {"id": f"pi_{n}", "client_secret": "s"}
            assert client.post("/api/payments/intents", json={"amount": 100}, headers=as_user(company)).status_code == 200

        response = client.post("/api/payments/intents", json={"amount": 100}, headers=as_user(company))
        assert response.status_code == 429

    def test_escrow_and_payout_flow(self, client, company, researcher, submission, fund_wallet, payment_methods):
        fund_wallet(company.id, 20000)

        created = client.post(
            "/api/escrow", json={"submission_id": submission.id, "amount": 10000}, headers=as_user(company)
        )
        assert created.status_code == 200
        assert created.json()["escrow"]["researcher_payout"] == 8500

        viewed = client.get(f"/api/escrow/{submission.id}", headers=as_user(researcher))
        assert viewed.json()["escrow"]["status"] == "held"

        payout = client.post(
            "/api/payouts/request",
            json={"submission_id": submission.id, "payment_method_id": payment_methods["platform_balance"].id},
            headers=as_user(researcher),
        )
        assert payout.status_code == 200
        assert payout.json()["success"] is True
        assert payout.json()["payout"]["status"] == "completed"

        listed = client.get("/api/payouts", headers=as_user(researcher)).json()["payouts"]
        assert len(listed) == 1

        entries = client.get("/api/wallet/transactions?limit=5", headers=as_user(researcher)).json()["transactions"]
        assert entries[0]["type"] == "payout_credit"
        assert entries[0]["amount"] == 8500

    def test_insufficient_balance_is_409(self, client, company, submission, fund_wallet):
        fund_wallet(company.id, 100)
        response = client.post(
            "/api/escrow", json={"submission_id": submission.id, "amount": 10000}, headers=as_user(company)
        )
        assert response.status_code == 409
        assert response.json() == {"error": "InsufficientBalance", "message": "Insufficient balance"}

    def test_escrow_view_for_outsiders(self, client, company, make_user, submission, fund_wallet):
        fund_wallet(company.id, 10000)
        client.post("/api/escrow", json={"submission_id": submission.id, "amount": 10000}, headers=as_user(company))

        outsider = make_user(UserType.RESEARCHER)
        assert client.get(f"/api/escrow/{submission.id}", headers=as_user(outsider)).status_code == 403
        assert client.get("/api/escrow/999", headers=as_user(outsider)).status_code == 404

    def test_payment_details_must_be_object(self, client, researcher, submission):
        response = client.post(
            "/api/payouts/request",
            json={"submission_id": submission.id, "payment_method_id": 1, "payment_details": "paypal"},
            headers=as_user(researcher),
        )
        assert response.status_code == 400

    def test_payment_methods(self, client, payment_methods):
        methods = client.get("/api/payment-methods").json()["payment_methods"]
        assert {m["type"] for m in methods} == set(payment_methods)


class TestCryptoRoutes:

    def test_wallet_registration(self, client, researcher):
        response = client.post(
            "/api/crypto/wallets",
            json={"wallet_address": TRON_ADDRESS, "network": "TRC20"},
            headers=as_user(researcher),
        )
        assert response.status_code == 200
        wallet = response.json()["wallet"]
        assert wallet["wallet_address"] == "TQn9Y2...bLSE"
        assert wallet["wallet_type"] == "external"

        duplicate = client.post(
            "/api/crypto/wallets",
            json={"wallet_address": TRON_ADDRESS, "network": "tron"},
            headers=as_user(researcher),
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "DuplicateWallet"

    def test_withdrawal_request_and_cancel(self, client, researcher, fund_wallet):
        fund_wallet(researcher.id, 50000)
        response = client.post(
            "/api/crypto/withdrawals",
            json={"amount": 10000, "wallet_address": TRON_ADDRESS, "network": "tron"},
            headers=as_user(researcher),
        )
        assert response.status_code == 200
        withdrawal = response.json()["withdrawal"]
        assert withdrawal["status"] == "pending"
        assert withdrawal["wallet_address"] == "TQn9Y2...bLSE"

        cancelled = client.post(f"/api/crypto/withdrawals/{withdrawal['id']}/cancel", headers=as_user(researcher))
        assert cancelled.json()["withdrawal"]["status"] == "cancelled"

    def test_blocked_withdrawal_is_403(self, client, researcher, fund_wallet):
        fund_wallet(researcher.id, 1000000)
        response = client.post(
            "/api/crypto/withdrawals",
            json={"amount": 600000, "wallet_address": TRON_ADDRESS, "network": "tron"},
            headers=as_user(researcher),
        )
        assert response.status_code == 403
        assert response.json()["message"].startswith("Withdrawal blocked:")

    def test_networks(self, client):
        networks = client.get("/api/crypto/networks").json()["networks"]
        assert [n["network"] for n in networks][:2] == ["bitcoin", "ethereum"]

    def test_crypto_payment_intent(self, client, company):
        response = client.post("/api/crypto/payment-intent", json={"amount": 25000}, headers=as_user(company))
        assert response.status_code == 200
        assert response.json()["payment_intent"]["currency"] == "USDT"
        assert response.json()["checkout"]["prepayId"] == "29383937493038367292"

    def test_payment_and_transaction_history(self, client, company, researcher):
        created = client.post("/api/crypto/payment-intent", json={"amount": 25000}, headers=as_user(company))
        order_id = created.json()["payment_intent"]["merchant_order_id"]

        payments = client.get("/api/crypto/payments", headers=as_user(company)).json()["payments"]
        assert [p["merchant_order_id"] for p in payments] == [order_id]
        assert client.get("/api/crypto/payments", headers=as_user(researcher)).json() == {"payments": []}
        assert client.get("/api/crypto/payments?status=completed", headers=as_user(company)).json() == {"payments": []}

        body = json.dumps({"merchantOrderId": order_id, "status": "SUCCESS", "transactionId": "BN-HIST-1"})
        ts, nonce = str(int(time.time() * 1000)), "n0nce"
        client.post(
            "/webhooks/binance-pay",
            content=body.encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "BinancePay-Timestamp": ts,
                "BinancePay-Nonce": nonce,
                "BinancePay-Signature": sign_payload("binance-test-secret", ts, nonce, body),
            },
        )

        history = client.get("/api/crypto/transactions", headers=as_user(company)).json()["transactions"]
        assert len(history) == 1
        assert history[0]["type"] == "payment_in"
        assert history[0]["amount"] == 25000
        assert history[0]["transaction_hash"] == "BN-HIST-1"
        assert client.get("/api/crypto/transactions", headers=as_user(researcher)).json() == {"transactions": []}


class TestWebhookRoutes:
    """Preflight, signature and acknowledgement shapes"""

    def test_stripe_without_signature_header(self, client):
        response = client.post("/webhooks/stripe", content=b"{}", headers={"Content-Type": "application/json"})
        assert response.status_code == 401
        assert response.json() == {"status": "rejected", "error": "Missing signature headers"}

    def test_stripe_wrong_content_type(self, client):
        response = client.post(
            "/webhooks/stripe", content=b"{}", headers={"Content-Type": "text/plain", "Stripe-Signature": "t=1,v1=x"}
        )
        assert response.status_code == 401

    def test_stripe_bad_signature(self, client):
        response = client.post(
            "/webhooks/stripe",
            content=b'{"id":"evt_1"}',
            headers={"Content-Type": "application/json", "Stripe-Signature": f"t={int(time.time())},v1=deadbeef"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "InvalidSignature"

    def test_stripe_signed_event(self, client, company):
        client.post("/api/payments/intents", json={"amount": 50000}, headers=as_user(company))
        payload = json.dumps({
            "id": "evt_route_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_test_123", "amount_received": 50000}},
        }).encode("utf-8")
        ts = int(time.time())
        digest = hmac.new(b"whsec_test_secret", f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()

        response = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Content-Type": "application/json", "Stripe-Signature": f"t={ts},v1={digest}"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "succeeded", "payment_intent": "pi_test_123"}

    def test_binance_signed_callback(self, client, company):
        created = client.post("/api/crypto/payment-intent", json={"amount": 25000}, headers=as_user(company))
        order_id = created.json()["payment_intent"]["merchant_order_id"]
        body = json.dumps({"merchantOrderId": order_id, "status": "SUCCESS", "transactionId": "BN-ROUTE-1"})
        ts, nonce = str(int(time.time() * 1000)), "n0nce"

        response = client.post(
            "/webhooks/binance-pay",
            content=body.encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "BinancePay-Timestamp": ts,
                "BinancePay-Nonce": nonce,
                "BinancePay-Signature": sign_payload("binance-test-secret", ts, nonce, body),
            },
        )

        assert response.status_code == 200
        assert response.json()["returnCode"] == "SUCCESS"
        assert response.json()["status"] == "completed"

    def test_binance_missing_headers(self, client):
        response = client.post("/webhooks/binance-pay", content=b"{}", headers={"Content-Type": "application/json"})
        assert response.status_code == 401


class TestAdminRoutes:

    def test_admin_routes_require_session(self, client):
        assert client.get("/api/admin/crypto/withdrawals").status_code == 403
        bogus = client.get("/api/admin/crypto/withdrawals", headers={"Authorization": "Bearer nope"})
        assert bogus.status_code == 403

    def test_bad_login(self, client, admin):
        response = client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": "guess"})
        assert response.status_code == 403

    def test_withdrawal_review(self, client, admin_headers, researcher, fund_wallet):
        fund_wallet(researcher.id, 50000)
        created = client.post(
            "/api/crypto/withdrawals",
            json={"amount": 10000, "wallet_address": TRON_ADDRESS, "network": "tron"},
            headers=as_user(researcher),
        ).json()["withdrawal"]

        pending = client.get("/api/admin/crypto/withdrawals?status=pending", headers=admin_headers).json()
        assert [w["id"] for w in pending["withdrawals"]] == [created["id"]]

        approved = client.patch(
            f"/api/admin/crypto/withdrawals/{created['id']}/status",
            json={"status": "approved", "admin_notes": "ok"},
            headers=admin_headers,
        )
        assert approved.status_code == 200
        assert approved.json()["withdrawal"]["status"] == "approved"

        wallet = client.get("/api/wallet", headers=as_user(researcher)).json()["wallet"]
        assert wallet["balance"] == 40000

        again = client.patch(
            f"/api/admin/crypto/withdrawals/{created['id']}/status",
            json={"status": "approved"},
            headers=admin_headers,
        )
        assert again.status_code == 409

    def test_company_wallet_adjustment(self, client, admin_headers, company):
        response = client.post(
            "/api/admin/company-wallet/update",
            json={"company_id": company.id, "amount": 7500, "note": "Offline wire"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["transaction"]["amount"] == 7500

    def test_company_wallet_listing(self, client, admin_headers, company, make_user, researcher, fund_wallet):
        other = make_user(UserType.COMPANY)
        fund_wallet(company.id, 5000)
        fund_wallet(other.id, 90000)
        fund_wallet(researcher.id, 70000)

        response = client.get("/api/admin/company-wallets", headers=admin_headers)

        assert response.status_code == 200
        wallets = response.json()["wallets"]
        assert [w["owner_id"] for w in wallets] == [other.id, company.id]
        assert wallets[0]["balance"] == 90000
        assert wallets[0]["company_name"] == "Acme Security"
        assert client.get("/api/admin/company-wallets").status_code == 403

    def test_webhook_history_filter(self, client, admin_headers):
        assert client.get("/api/admin/webhooks/events?provider=stripe", headers=admin_headers).json() == {"events": []}
        assert client.get("/api/admin/webhooks/events?provider=paypal", headers=admin_headers).status_code == 400

    def test_crypto_stats_and_logout(self, client, admin_headers):
        stats = client.get("/api/admin/crypto/stats", headers=admin_headers)
        assert stats.json()["pending_withdrawals"] == 0

        assert client.post("/api/admin/logout", headers=admin_headers).json() == {"success": True}
        assert client.get("/api/admin/crypto/stats", headers=admin_headers).status_code == 403


class TestDisputeRoutes:

    def test_open_and_resolve(self, client, admin_headers, researcher, submission):
        opened = client.post(
            "/api/disputes",
            json={"submission_id": submission.id, "dispute_type": "payment_amount", "description": "Short paid"},
            headers=as_user(researcher),
        )
        assert opened.status_code == 200
        dispute_id = opened.json()["dispute"]["id"]

        assert client.post(f"/api/disputes/{dispute_id}/review", headers=admin_headers).status_code == 200
        resolved = client.post(
            f"/api/disputes/{dispute_id}/resolve",
            json={"status": "resolved", "resolution": "Difference paid"},
            headers=admin_headers,
        )
        assert resolved.json()["changed"] is True

        mine = client.get("/api/disputes", headers=as_user(researcher)).json()["disputes"]
        assert [d["status"] for d in mine] == ["resolved"]

    def test_unknown_dispute_type(self, client, researcher, submission):
        response = client.post(
            "/api/disputes",
            json={"submission_id": submission.id, "dispute_type": "vibes", "description": "x"},
            headers=as_user(researcher),
        )
        assert response.status_code == 400
