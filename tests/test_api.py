from fastapi.testclient import TestClient

from conftest import ADMIN_ID, BUYER_ID, ITEM_ID, OTHER_ID, PNG_BYTES, SELLER_ID, capture_completed_event, token_for


def _create(client, method="transfer", **extra):
    body = {"item_id": ITEM_ID, "method": method, "amount": "100.00", **extra}
    response = client.post("/orders", json=body, headers=token_for(BUYER_ID))
    assert response.status_code == 201, response.text
    return response.json()


def test_create_order(client):
    body = _create(client)

    assert body["order"]["status"] == "PENDING_PAYMENT"
    assert body["order"]["buyer_id"] == BUYER_ID
    assert body["order"]["seller_id"] == SELLER_ID
    assert body["order"]["amount"] == "100.00"
    assert body["payment"]["status"] == "pending"
    assert body["payment"]["method"] == "transfer"


def test_requests_without_token_are_rejected(client):
    assert client.post("/orders", json={"item_id": ITEM_ID}).status_code == 401
    assert client.get("/orders", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_create_order_validation_error(client):
    response = client.post("/orders", json={"item_id": ITEM_ID, "method": "bitcoin"},
                           headers=token_for(BUYER_ID))

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"
    assert response.json()["retryable"] is False


def test_only_admin_creates_for_another_buyer(client):
    body = {"item_id": ITEM_ID, "buyer_id": OTHER_ID}
    assert client.post("/orders", json=body, headers=token_for(BUYER_ID)).status_code == 403

    response = client.post("/orders", json=body, headers=token_for(ADMIN_ID, role="admin"))
    assert response.status_code == 201
    assert response.json()["order"]["buyer_id"] == OTHER_ID


def test_proof_upload_and_verify(client):
    order_id = _create(client)["order"]["id"]

    response = client.post(
        f"/orders/{order_id}/proof",
        files={"slip": ("slip.png", PNG_BYTES, "image/png")},
        headers=token_for(BUYER_ID),
    )
    assert response.status_code == 200
    payment = response.json()["payment"]
    assert response.json()["order"]["status"] == "PAID_PENDING_VERIFY"
    assert payment["slip_image_url"].startswith("/uploads/slips/")

    served = client.get(payment["slip_image_url"])
    assert served.status_code == 200
    assert served.content == PNG_BYTES

    response = client.post(f"/orders/{order_id}/verify", headers=token_for(SELLER_ID))
    assert response.status_code == 200
    assert response.json()["order"]["status"] == "PAID_VERIFIED"
    assert response.json()["payment"]["paid_at"] is not None


def test_proof_upload_rejects_pdf(client):
    order_id = _create(client)["order"]["id"]

    response = client.post(
        f"/orders/{order_id}/proof",
        files={"slip": ("slip.pdf", b"%PDF-1.7", "application/pdf")},
        headers=token_for(BUYER_ID),
    )

    assert response.status_code == 400
    assert client.get(f"/orders/{order_id}", headers=token_for(BUYER_ID)).json()["order"]["status"] == "PENDING_PAYMENT"


def test_proof_from_non_buyer_is_discarded(client, settings):
    order_id = _create(client)["order"]["id"]

    response = client.post(
        f"/orders/{order_id}/proof",
        files={"slip": ("slip.png", PNG_BYTES, "image/png")},
        headers=token_for(SELLER_ID),
    )

    assert response.status_code == 403
    assert not any((settings.upload_dir / "slips").iterdir())


def test_transition_errors_map_to_status_codes(client):
    order_id = _create(client)["order"]["id"]

    response = client.post(f"/orders/{order_id}/complete", headers=token_for(BUYER_ID))
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_state"

    assert client.post(f"/orders/{order_id}/verify", headers=token_for(BUYER_ID)).status_code == 403
    assert client.post("/orders/missing/verify", headers=token_for(SELLER_ID)).status_code == 404
    assert client.get(f"/orders/{order_id}", headers=token_for(OTHER_ID)).status_code == 403


def test_list_orders(client):
    _create(client)
    _create(client, method="cash")

    response = client.get("/orders", params={"limit": 1}, headers=token_for(BUYER_ID))
    assert response.status_code == 200
    assert response.json()["total"] == 2
    assert len(response.json()["orders"]) == 1

    assert client.get("/orders", headers=token_for(OTHER_ID)).json()["total"] == 0


def test_cancel_and_delete(client):
    order_id = _create(client)["order"]["id"]
    admin = token_for(ADMIN_ID, role="admin")

    assert client.delete(f"/orders/{order_id}", headers=admin).status_code == 409

    response = client.post(f"/orders/{order_id}/cancel", headers=token_for(SELLER_ID))
    assert response.json()["order"]["status"] == "CANCELLED"
    assert response.json()["payment"]["status"] == "failed"

    assert client.delete(f"/orders/{order_id}", headers=admin).status_code == 200
    assert client.get(f"/orders/{order_id}", headers=admin).status_code == 404


def test_token_balance(client):
    response = client.get(f"/tokens/{BUYER_ID}", headers=token_for(BUYER_ID))
    assert response.json() == {"owner_id": BUYER_ID, "symbol": "BROC", "balance": 0}

    assert client.get(f"/tokens/{BUYER_ID}", headers=token_for(SELLER_ID)).status_code == 403
    assert client.get(f"/tokens/{BUYER_ID}", headers=token_for(ADMIN_ID, role="admin")).status_code == 200


def test_reconcile_is_admin_only(client):
    assert client.post("/admin/rewards/reconcile", headers=token_for(BUYER_ID)).status_code == 403

    response = client.post("/admin/rewards/reconcile", headers=token_for(ADMIN_ID, role="admin"))
    assert response.status_code == 200
    assert response.json() == {"repaired": 0}


def test_checkout_upstream_error(client, paypal_sandbox):
    order_id = _create(client, method="paypal")["order"]["id"]
    paypal_sandbox.overrides["/v2/checkout/orders"] = (503, {"name": "SERVICE_UNAVAILABLE"})

    response = client.post(f"/orders/{order_id}/checkout", headers=token_for(BUYER_ID))

    assert response.status_code == 502
    assert response.json()["error"] == "upstream_error"
    assert response.json()["retryable"] is True


def test_paypal_webhook_invalid_signature(client, paypal, paypal_sandbox):
    paypal.webhook_id = "WH-1"
    paypal_sandbox.verification_status = "FAILURE"
    order_id = _create(client, method="paypal")["order"]["id"]

    response = client.post(
        "/webhook/paypal",
        content=capture_completed_event(order_id),
        headers={
            "paypal-auth-algo": "SHA256withRSA",
            "paypal-cert-url": "https://api.paypal.test/cert",
            "paypal-transmission-id": "tx-1",
            "paypal-transmission-sig": "forged",
            "paypal-transmission-time": "2026-01-01T00:00:00Z",
        },
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert client.get(f"/orders/{order_id}", headers=token_for(BUYER_ID)).json()["order"]["status"] == "PENDING_PAYMENT"


def test_webhook_for_unknown_order_is_acknowledged(client):
    response = client.post("/webhook/paypal", content=capture_completed_event("no-such-order"))

    assert response.status_code == 200
    assert response.json()["ignored"] is True


def test_webhook_with_garbage_body(client):
    response = client.post("/webhook/paypal", content=b"not json")
    assert response.status_code == 200
    assert response.json()["reason"] == "invalid_body"


def test_price_advice_is_cached_per_listing(settings, stores, catalog, gateways, mocker):
    from tradepay.main import create_app

    advisor = mocker.Mock(return_value={"suggested_price": 950, "range": [800, 1100]})
    body = {"title": "Film  Camera", "condition": "used", "price": "1000"}

    with TestClient(create_app(settings, stores=stores, gateways=gateways, price_advisor=advisor)) as client:
        first = client.post("/price-advice", json=body, headers=token_for(BUYER_ID))
        second = client.post("/price-advice", json={**body, "title": "film camera"}, headers=token_for(OTHER_ID))

    assert first.status_code == 200
    assert first.headers["X-Cache"] == "MISS"
    assert first.json() == {"advice": {"suggested_price": 950, "range": [800, 1100]}, "cached": False}
    assert second.headers["X-Cache"] == "HIT"
    assert second.json()["cached"] is True
    advisor.assert_called_once()
    assert advisor.call_args.args[0]["title"] == "film camera"


def test_price_advice_requires_title_and_advisor(client, settings, stores, catalog, gateways, mocker):
    from tradepay.main import create_app

    response = client.post("/price-advice", json={"title": "lamp"}, headers=token_for(BUYER_ID))
    assert response.status_code == 502
    assert response.json()["error"] == "upstream_error"

    advisor = mocker.Mock()
    with TestClient(create_app(settings, stores=stores, gateways=gateways, price_advisor=advisor)) as local:
        response = local.post("/price-advice", json={"title": "  "}, headers=token_for(BUYER_ID))

    assert response.status_code == 400
    advisor.assert_not_called()
