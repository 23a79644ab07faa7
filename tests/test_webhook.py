from decimal import Decimal

import stripe

from order_service import models
from conftest import STAFF, TestingSessionLocal, auth_headers, order_payload


def create_order(client):
    response = client.post("/orders", json=order_payload(("prod-tee", "29.99", 1)), headers=auth_headers("user-1"))
    return response.json()["data"]["id"]


def test_stripe_webhook_payment_succeeded(client, mocker):
    order_id = create_order(client)

    mock_event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_mock_123", "metadata": {"orderId": order_id}}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post("/webhook", content="raw_payload", headers={"stripe-signature": "valid_sig"})

    assert response.status_code == 200
    assert response.json() == {"ok": True}

    db = TestingSessionLocal()
    order = db.get(models.Order, order_id)
    assert order.status == "processing"
    assert order.payment_intent_id == "pi_mock_123"
    db.close()


def test_stripe_webhook_authorization_for_several_orders(client, mocker):
    first, second = create_order(client), create_order(client)

    mock_event = {
        "type": "payment_intent.amount_capturable_updated",
        "data": {"object": {"id": "pi_cart", "metadata": {"orderIds": f'["{first}", "{second}"]'}}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post("/webhook", content="raw_payload", headers={"stripe-signature": "valid_sig"})

    assert response.status_code == 200
    for order_id in (first, second):
        order = client.get(f"/orders/{order_id}", headers=STAFF).json()["data"]
        assert order["status"] == "processing"
        assert order["paymentIntentId"] == "pi_cart"


def test_stripe_webhook_is_idempotent(client, mocker):
    order_id = create_order(client)
    mock_event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_again", "metadata": {"orderId": order_id}}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    client.post("/webhook", content="raw_payload", headers={"stripe-signature": "valid_sig"})
    response = client.post("/webhook", content="raw_payload", headers={"stripe-signature": "valid_sig"})

    assert response.status_code == 200
    timeline = client.get(f"/orders/{order_id}/timeline", headers=STAFF).json()["data"]
    assert [e["eventType"] for e in timeline].count("status_changed") == 1


def test_stripe_webhook_refund_updated(client, gateway, mocker):
    order_id = create_order(client)
    db = TestingSessionLocal()
    db.get(models.Order, order_id).payment_intent_id = "pi_refund"
    db.commit()
    db.close()
    gateway.add_intent("pi_refund", Decimal("29.99"))
    gateway.refund_status = "pending"
    refund_id = client.post(f"/refunds/{order_id}", json={}, headers=STAFF).json()["data"]["refundId"]

    mock_event = {
        "type": "charge.refund.updated",
        "data": {"object": {"id": refund_id, "status": "succeeded"}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post("/webhook", content="raw_payload", headers={"stripe-signature": "valid_sig"})

    assert response.status_code == 200
    listing = client.get(f"/refunds/order/{order_id}", headers=STAFF).json()["data"]
    assert listing["refunds"][0]["status"] == "succeeded"
    assert listing["totalRefunded"] == 29.99


def test_stripe_webhook_unknown_refund_is_ignored(client, mocker):
    mock_event = {
        "type": "charge.refund.updated",
        "data": {"object": {"id": "re_elsewhere", "status": "succeeded"}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post("/webhook", content="raw_payload", headers={"stripe-signature": "valid_sig"})

    assert response.status_code == 200


def test_stripe_webhook_invalid_signature(client, mocker):
    mocker.patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("bad signature", "invalid_sig"),
    )

    response = client.post("/webhook", content="raw_payload", headers={"stripe-signature": "invalid_sig"})

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid signature"


def test_stripe_webhook_invalid_payload(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json"))

    response = client.post("/webhook", content="not json", headers={"stripe-signature": "sig"})

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid payload"
