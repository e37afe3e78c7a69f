from conftest import COURIER, OTHER_COURIER, SENDER
from raven_engine.clients.database import Transaction as TransactionORM, session_scope
from raven_engine.models.enums import TransactionStatus


def _as(user_id):
    return {"X-Actor-Id": user_id}


SHIPMENT_PAYLOAD = {
    "origin_country": "Germany",
    "origin_city": "Berlin",
    "destination_country": "Italy",
    "destination_city": "Rome",
    "content": "Camera lens",
    "weight": 0.8,
    "window_start": "2026-11-02T08:00:00+00:00",
    "window_end": "2026-11-06T20:00:00+00:00",
    "price": "60.00",
    "currency": "eur",
}


def _create_shipment(api_client):
    response = api_client.post("/shipments", json=SHIPMENT_PAYLOAD, headers=_as(SENDER))
    assert response.status_code == 201
    return response.json()


def test_health(api_client):
    assert api_client.get("/health").json() == {"status": "ok"}


def test_full_delivery_flow(api_client):
    shipment = _create_shipment(api_client)
    assert shipment["status"] == "OPEN"
    assert shipment["currency"] == "EUR"

    offer_resp = api_client.post(
        f"/shipments/{shipment['id']}/offers",
        json={"proposed_price": "55.00", "message": "Flying to Rome on Tuesday."},
        headers=_as(COURIER),
    )
    assert offer_resp.status_code == 201
    offer = offer_resp.json()

    listed = api_client.get("/shipments", params={"status_filter": "OPEN", "origin_country": "germ"}).json()
    assert [item["id"] for item in listed] == [shipment["id"]]

    match_resp = api_client.post(
        f"/shipments/{shipment['id']}/match",
        json={"offer_id": offer["id"]},
        headers=_as(SENDER),
    )
    assert match_resp.status_code == 200
    match = match_resp.json()
    assert match["transaction"]["status"] == "HELD"
    assert match["transaction"]["amount"] == "60.00"
    assert match["offer"]["proposed_price"] == "55.00"

    transit = api_client.post(f"/shipments/{shipment['id']}/transit", headers=_as(COURIER))
    assert transit.json()["status"] == "IN_TRANSIT"

    deliver = api_client.post(f"/shipments/{shipment['id']}/deliver", headers=_as(SENDER))
    assert deliver.status_code == 200
    assert deliver.json()["status"] == "RELEASED"

    again = api_client.post(f"/shipments/{shipment['id']}/deliver", headers=_as(SENDER))
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_TERMINAL"

    history = api_client.get(f"/users/{COURIER}/transactions").json()
    assert history[0]["role"] == "courier"
    assert history[0]["transaction"]["status"] == "RELEASED"


def test_errors_map_to_http_statuses(api_client):
    assert api_client.get("/shipments/missing").status_code == 404

    shipment = _create_shipment(api_client)
    own_offer = api_client.post(f"/shipments/{shipment['id']}/offers", json={}, headers=_as(SENDER))
    assert own_offer.status_code == 403
    assert own_offer.json()["code"] == "UNAUTHORIZED"

    no_escrow = api_client.post(f"/shipments/{shipment['id']}/cancel", headers=_as(SENDER))
    assert no_escrow.status_code == 409
    assert no_escrow.json()["code"] == "WRONG_STATE"

    anonymous = api_client.post("/shipments", json=SHIPMENT_PAYLOAD)
    assert anonymous.status_code == 401


def test_invalid_shipment_is_rejected(api_client):
    payload = dict(SHIPMENT_PAYLOAD, weight=75)
    assert api_client.post("/shipments", json=payload, headers=_as(SENDER)).status_code == 422

    payload = dict(SHIPMENT_PAYLOAD, window_end="2026-11-01T00:00:00+00:00")
    assert api_client.post("/shipments", json=payload, headers=_as(SENDER)).status_code == 422


def test_declined_hold_returns_payment_required(api_client, processor):
    shipment = _create_shipment(api_client)
    offer = api_client.post(f"/shipments/{shipment['id']}/offers", json={}, headers=_as(COURIER)).json()
    processor.configure(should_succeed=False)

    response = api_client.post(
        f"/shipments/{shipment['id']}/match",
        json={"offer_id": offer["id"]},
        headers=_as(SENDER),
    )

    assert response.status_code == 402
    assert response.json() == {
        "detail": "Payment could not be processed, please try again.",
        "code": "PAYMENT_HOLD_FAILED",
    }
    assert api_client.get(f"/shipments/{shipment['id']}").json()["status"] == "OPEN"
    with session_scope() as db:
        assert db.query(TransactionORM).count() == 0


def test_second_accept_is_told_shipment_is_taken(api_client):
    shipment = _create_shipment(api_client)
    first = api_client.post(f"/shipments/{shipment['id']}/offers", json={}, headers=_as(COURIER)).json()
    second = api_client.post(f"/shipments/{shipment['id']}/offers", json={}, headers=_as(OTHER_COURIER)).json()

    api_client.post(f"/shipments/{shipment['id']}/match", json={"offer_id": first["id"]}, headers=_as(SENDER))
    response = api_client.post(
        f"/shipments/{shipment['id']}/match",
        json={"offer_id": second["id"]},
        headers=_as(SENDER),
    )

    assert response.status_code == 409
    assert response.json()["detail"] == "This shipment was just matched with someone else."


def test_conversation_endpoints(api_client):
    shipment = _create_shipment(api_client)
    conversation = api_client.post(
        "/conversations",
        json={"shipment_id": shipment["id"], "initial_message": "Is the lens fragile?"},
        headers=_as(COURIER),
    ).json()

    sent = api_client.post(
        f"/conversations/{conversation['id']}/messages",
        json={"content": "Yes, please keep it upright."},
        headers=_as(SENDER),
    )
    assert sent.status_code == 201

    system = api_client.post(
        f"/conversations/{conversation['id']}/messages",
        json={"content": "fake", "type": "SYSTEM"},
        headers=_as(SENDER),
    )
    assert system.status_code == 403

    inbox = api_client.get(f"/users/{SENDER}/conversations").json()
    assert inbox[0]["unread_count"] == 1
    assert api_client.get(f"/users/{SENDER}/unread").json() == {"unread": 1}
    assert inbox[0]["conversation"]["status"] == "ACTIVE"

    delivered = api_client.post(f"/conversations/{conversation['id']}/delivered", headers=_as(SENDER))
    assert delivered.json() == {"delivered": 1}

    read = api_client.post(f"/conversations/{conversation['id']}/read", headers=_as(SENDER))
    assert read.json()["unread_user1"] == 0

    messages = api_client.get(f"/conversations/{conversation['id']}/messages", headers=_as(COURIER)).json()
    assert [item["status"] for item in messages] == ["READ", "SENT"]


def test_withdraw_rejects_pending_offers(api_client, notifier):
    shipment = _create_shipment(api_client)
    api_client.post(f"/shipments/{shipment['id']}/offers", json={}, headers=_as(COURIER))

    response = api_client.post(f"/shipments/{shipment['id']}/withdraw", headers=_as(SENDER))

    assert response.json()["status"] == "CANCELLED"
    offers = api_client.get(f"/shipments/{shipment['id']}/offers").json()
    assert [item["status"] for item in offers] == ["REJECTED"]


def test_reconcile_is_admin_only(api_client):
    assert api_client.post("/admin/reconcile", headers=_as(SENDER)).status_code == 403

    report = api_client.post("/admin/reconcile", params={"stale_after_seconds": 0}, headers=_as("ops")).json()
    assert report == {"settlements": [], "reverted_shipment_ids": []}


def test_transaction_endpoint_reports_escrow(api_client):
    shipment = _create_shipment(api_client)
    offer = api_client.post(f"/shipments/{shipment['id']}/offers", json={}, headers=_as(COURIER)).json()
    api_client.post(f"/shipments/{shipment['id']}/match", json={"offer_id": offer["id"]}, headers=_as(SENDER))

    transaction = api_client.get(f"/shipments/{shipment['id']}/transaction").json()

    assert transaction["status"] == TransactionStatus.HELD.value
    assert transaction["platform_fee"] == "9.00"
    assert transaction["payout_amount"] == "51.00"
