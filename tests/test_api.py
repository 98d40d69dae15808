"""
Tests for the HTTP and WebSocket surface (main.py and the routers).

Covers:
  - Bearer token resolution and first-sight provisioning
  - Identity-provider and processor callbacks guarded by shared secrets
  - Marketplace errors rendered as JSON with their status codes
  - Checkout settled through the processor webhook
  - Subscription checkout, cancel and verify
  - Platform admin gating
  - Handshake stream snapshot and ping over WebSocket
"""

import jwt
import pytest
from starlette.websockets import WebSocketDisconnect

from ticket_exchange.config import settings
from ticket_exchange.events.event_service import EventService
from ticket_exchange.handshake.handshake_service import HandshakeService

API = settings.API_V1_STR


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestIdentity:
    def test_unauthenticated(self, client):
        assert client.get(f"{API}/auth/me").status_code == 401

    def test_bad_signature(self, client):
        token = jwt.encode({"sub": "someone", "email": "x@example.com"}, "wrong-key", algorithm=settings.ALGORITHM)
        assert client.get(f"{API}/auth/me", headers=_auth(token)).status_code == 401

    def test_first_request_provisions_user(self, client):
        token = jwt.encode({"sub": "idp-123", "email": "New@Example.com"}, settings.SECRET_KEY,
                           algorithm=settings.ALGORITHM)
        response = client.get(f"{API}/auth/me", headers=_auth(token))
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == "idp-123"
        assert body["email"] == "new@example.com"
        assert body["referral_code"]

    def test_provision_callback_requires_secret(self, client):
        payload = {"user_id": "idp-9", "email": "nine@example.com"}
        assert client.post(f"{API}/auth/provision", json=payload).status_code == 401

        headers = {"X-Identity-Secret": settings.IDENTITY_WEBHOOK_SECRET}
        created = client.post(f"{API}/auth/provision", json=payload, headers=headers)
        assert created.status_code == 201
        again = client.post(f"{API}/auth/provision", json=payload, headers=headers)
        assert again.json()["id"] == created.json()["id"]

        clash = {"user_id": "idp-10", "email": "nine@example.com"}
        assert client.post(f"{API}/auth/provision", json=clash, headers=headers).status_code == 409


class TestErrors:
    def test_not_found_is_json(self, client, buyer, token_for):
        response = client.get(f"{API}/tickets/missing", headers=_auth(token_for(buyer)))
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_forbidden_for_wrong_role(self, client, event, buyer, token_for):
        response = client.post(
            f"{API}/events/{event.id}/ticket-types",
            json={"name": "VIP", "price_cents": 5000},
            headers=_auth(token_for(buyer)),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Unauthorized"

    def test_validation_error(self, client, buyer, token_for, make_tier):
        tier = make_tier()
        response = client.post(f"{API}/payments/checkout", json={"ticket_type_id": tier.id, "quantity": 0},
                               headers=_auth(token_for(buyer)))
        assert response.status_code == 422


class TestCheckoutFlow:
    def test_webhook_settles_checkout(self, client, buyer, token_for, make_tier):
        tier = make_tier(price_cents=1000, max_quantity=5)
        headers = _auth(token_for(buyer))

        started = client.post(f"{API}/payments/checkout", json={"ticket_type_id": tier.id, "quantity": 2},
                              headers=headers)
        assert started.status_code == 201
        payment = started.json()["payment"]
        assert payment["status"] == "processing"

        outcome = {"intent_id": payment["processor_intent_id"], "success": True, "charge_ref": "ch_hook"}
        assert client.post(f"{API}/payments/webhook", json=outcome).status_code == 401

        secret = {"X-Processor-Secret": settings.PROCESSOR_WEBHOOK_SECRET}
        settled = client.post(f"{API}/payments/webhook", json=outcome, headers=secret)
        assert settled.status_code == 200
        assert settled.json()["status"] == "completed"
        redelivered = client.post(f"{API}/payments/webhook", json=outcome, headers=secret)
        assert redelivered.status_code == 200

        tickets = client.get(f"{API}/tickets/mine", headers=headers).json()
        assert len(tickets) == 2

        availability = client.get(f"{API}/events/{tier.event_id}/ticket-types").json()
        assert availability[0]["sold"] == 2

    def test_complete_and_refund(self, client, buyer, token_for, make_tier):
        tier = make_tier(price_cents=2500)
        headers = _auth(token_for(buyer))
        payment_id = client.post(f"{API}/payments/checkout", json={"ticket_type_id": tier.id},
                                 headers=headers).json()["payment"]["id"]

        completed = client.post(f"{API}/payments/{payment_id}/complete", headers=headers)
        assert completed.json()["status"] == "completed"
        refunded = client.post(f"{API}/payments/{payment_id}/refund", headers=headers)
        assert refunded.json()["status"] == "refunded"
        again = client.post(f"{API}/payments/{payment_id}/refund", headers=headers)
        assert again.status_code == 409

    def test_declined_card(self, client, processor, buyer, token_for, make_tier):
        tier = make_tier()
        processor.declined_payers.add(buyer.id)
        headers = _auth(token_for(buyer))
        payment_id = client.post(f"{API}/payments/checkout", json={"ticket_type_id": tier.id},
                                 headers=headers).json()["payment"]["id"]
        response = client.post(f"{API}/payments/{payment_id}/complete", headers=headers)
        assert response.status_code == 402
        assert response.json()["error"] == "ProcessorFailure"


class TestSubscriptions:
    def test_subscribe_and_cancel(self, client, organizer, token_for):
        headers = _auth(token_for(organizer))
        assert client.get(f"{API}/subscriptions/me", headers=headers).json()["effective_tier"] == "base"

        started = client.post(f"{API}/subscriptions/checkout", json={"tier": "pro"}, headers=headers)
        assert started.status_code == 201
        assert started.json()["subscription"]["status"] == "incomplete"
        payment_id = started.json()["payment"]["id"]

        assert client.post(f"{API}/payments/{payment_id}/complete", headers=headers).json()["status"] == "completed"
        current = client.get(f"{API}/subscriptions/me", headers=headers).json()
        assert current["status"] == "active"
        assert current["effective_tier"] == "pro"

        cancelled = client.post(f"{API}/subscriptions/cancel", headers=headers).json()
        assert cancelled["cancel_at_period_end"] is True
        assert client.post(f"{API}/subscriptions/verify", headers=headers).json()["effective_tier"] == "pro"

    def test_base_tier_is_not_for_sale(self, client, organizer, token_for):
        response = client.post(f"{API}/subscriptions/checkout", json={"tier": "base"},
                               headers=_auth(token_for(organizer)))
        assert response.status_code == 422

    def test_nothing_to_cancel(self, client, organizer, token_for):
        response = client.post(f"{API}/subscriptions/cancel", headers=_auth(token_for(organizer)))
        assert response.status_code == 409


class TestAdmin:
    def test_non_admin_forbidden(self, client, buyer, token_for):
        assert client.get(f"{API}/admin/audit", headers=_auth(token_for(buyer))).status_code == 403

    def test_admin_endpoints(self, client, make_user, token_for):
        admin = make_user("root@example.com", admin=True)
        headers = _auth(token_for(admin))
        assert client.get(f"{API}/admin/audit", headers=headers).json()["ok"] is True
        assert client.post(f"{API}/admin/sweep", headers=headers).status_code == 200
        assert client.get(f"{API}/admin/reconciliation", headers=headers).json() == []


class TestHandshakeSocket:
    def test_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"{API}/handshake/ws?token=garbage") as ws:
                ws.receive_text()

    def test_snapshot_then_pong(self, client, db, organizer, buyer, event, make_user, token_for):
        vendor = make_user("vendor@example.com")
        EventService(db).grant_staff(event.id, organizer.id, vendor.id, "vendor")
        row = HandshakeService(db).initiate(vendor.id, buyer.id, event.id, 1200)

        with client.websocket_connect(f"{API}/handshake/ws?token={token_for(buyer)}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["id"] == row.id
            assert snapshot["amount_cents"] == 1200

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"
