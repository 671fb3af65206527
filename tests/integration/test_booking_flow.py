# tests/integration/test_booking_flow.py

from datetime import date, timedelta


EVENT_DATE = (date.today() + timedelta(days=120)).isoformat()


def _onboard_vendor(client, headers, vendor_id, category, price_cents):
    admin = headers("admin-1", "admin")
    vendor = headers(vendor_id, "vendor")

    assert client.post(f"/vendors/{vendor_id}/compliance/approve", headers=admin).status_code == 200
    contract = client.post(
        f"/vendors/{vendor_id}/compliance/contract",
        json={"contract_version": "2024-01"},
        headers=vendor,
    )
    assert contract.status_code == 200
    assert contract.json()["missing"] == ["training_completed", "payouts_enabled"]
    assert client.post(f"/vendors/{vendor_id}/compliance/training", headers=admin).status_code == 200
    payout_account = client.post(
        f"/vendors/{vendor_id}/compliance/payout-account",
        json={"charges_enabled": True, "payouts_enabled": True},
        headers=admin,
    )
    assert payout_account.json()["can_publish"] is True

    listing = client.post(
        "/listings",
        json={"category": category, "title": f"{vendor_id} {category}", "base_price_cents": price_cents},
        headers=vendor,
    )
    assert listing.status_code == 200
    published = client.post(f"/listings/{listing.json()['id']}/publish", headers=vendor)
    assert published.json()["is_published"] is True
    return listing.json()["id"]


def test_booking_flow(client, headers, webhook_body):
    customer = headers("customer-1", "customer", "anna@example.org")
    venue_vendor = headers("vendor-venue", "vendor")
    dj_vendor = headers("vendor-dj", "vendor")
    venue_id = _onboard_vendor(client, headers, "vendor-venue", "venue", 250000)
    dj_id = _onboard_vendor(client, headers, "vendor-dj", "dj", 90000)

    response = client.post(
        "/bookings",
        json={
            "event_date": EVENT_DATE,
            "items": [
                {"service_id": venue_id, "is_required": True},
                {"service_id": dj_id},
            ],
        },
        headers=customer,
    )
    assert response.status_code == 200
    booking = response.json()
    booking_id = booking["id"]
    assert booking["status"] == "pending"
    assert booking["total_cents"] == 340000
    items = {item["vendor_id"]: item for item in booking["items"]}

    counter = client.post(
        f"/bookings/{booking_id}/items/{items['vendor-dj']['id']}/counter",
        json={"price_cents": 95000, "reason": "Extra hour of music"},
        headers=dj_vendor,
    )
    assert counter.status_code == 200
    dj_item = next(item for item in counter.json()["items"] if item["vendor_id"] == "vendor-dj")
    assert dj_item["current_offer_version"] == 2
    assert dj_item["can_counter"] is False

    stale = client.post(
        f"/bookings/{booking_id}/items/{items['vendor-dj']['id']}/accept",
        json={"offer_version": 1},
        headers=customer,
    )
    assert stale.status_code == 409
    assert stale.json()["code"] == "stale_offer_version"

    client.post(
        f"/bookings/{booking_id}/items/{items['vendor-dj']['id']}/accept",
        json={"offer_version": 2},
        headers=customer,
    )
    accepted = client.post(
        f"/bookings/{booking_id}/items/{items['vendor-venue']['id']}/accept",
        json={"offer_version": 1},
        headers=venue_vendor,
    )
    agreement = accepted.json()["agreement"]
    assert accepted.json()["status"] == "pending"
    assert agreement["can_sign"] is True

    for signer in (customer, venue_vendor, dj_vendor):
        signed = client.post(
            f"/bookings/{booking_id}/agreement/accept",
            json={"agreement_version": agreement["agreement_version"]},
            headers=signer,
        )
        assert signed.status_code == 200
    assert signed.json()["status"] == "accepted"
    assert signed.json()["final_cents"] == 345000

    calendar = client.get(f"/listings/{venue_id}/calendar", params={"start": EVENT_DATE, "end": EVENT_DATE})
    assert calendar.json()[0]["status"] == "blocked"

    checkout = client.post(
        "/checkout",
        json={"booking_id": booking_id, "success_ref": "https://app.example/ok", "cancel_ref": "https://app.example/no"},
        headers=customer,
    )
    assert checkout.status_code == 200
    invoice = checkout.json()
    assert invoice["status"] == "issued"
    assert invoice["amount_cents"] == 345000

    body = webhook_body("order.paid", invoice["session_ref"])
    webhook_headers = {"X-Razorpay-Signature": "valid-signature", "X-Razorpay-Event-Id": "evt_flow_1"}
    paid = client.post("/payments/webhook", content=body, headers=webhook_headers)
    assert paid.status_code == 200
    assert paid.json() == {"result": "applied", "invoice_id": invoice["id"], "invoice_status": "paid"}

    replay = client.post("/payments/webhook", content=body, headers=webhook_headers)
    assert replay.json()["result"] == "already_processed"

    payouts = client.get("/vendors/vendor-dj/payouts", headers=dj_vendor)
    assert payouts.status_code == 200
    assert payouts.json()["pending_cents"] == 80750
    assert len(payouts.json()["payouts"]) == 1

    sweep = client.post("/maintenance/sweep", headers=headers("admin-1", "admin"))
    assert sweep.json()["released_payouts"] == 2

    payouts = client.get("/vendors/vendor-dj/payouts", headers=dj_vendor)
    assert payouts.json()["paid_cents"] == 80750


def test_request_offer_flow(client, headers, webhook_body):
    customer = headers("customer-1", "customer", "anna@example.org")
    vendor = headers("vendor-a", "vendor")
    _onboard_vendor(client, headers, "vendor-a", "catering", 45000)

    created = client.post(
        "/requests",
        json={"categories": ["Catering"], "budget_cents": 50000, "response_hours": 24},
        headers=customer,
    )
    assert created.status_code == 200
    request_id = created.json()["id"]

    open_requests = client.get("/requests/open", params={"category": "catering"}, headers=vendor)
    assert [item["id"] for item in open_requests.json()] == [request_id]

    offer = client.post(
        f"/requests/{request_id}/offers",
        json={"price_cents": 45000, "message": "Buffet for 80 guests"},
        headers=vendor,
    )
    assert offer.status_code == 200
    offer_id = offer.json()["id"]

    accepted = client.patch(
        f"/requests/{request_id}/offers/{offer_id}",
        json={"status": "accepted"},
        headers=customer,
    )
    assert accepted.json()["status"] == "accepted"
    assert client.get(f"/requests/{request_id}", headers=customer).json()["status"] == "closed"

    checkout = client.post(
        "/checkout",
        json={"request_id": request_id, "offer_id": offer_id, "success_ref": "ok", "cancel_ref": "no"},
        headers=customer,
    )
    assert checkout.json()["amount_cents"] == 45000

    paid = client.post(
        "/payments/webhook",
        content=webhook_body("payment.captured", checkout.json()["session_ref"]),
        headers={"X-Razorpay-Signature": "valid-signature", "X-Razorpay-Event-Id": "evt_offer_1"},
    )
    assert paid.json()["invoice_status"] == "paid"

    summary = client.get("/vendors/vendor-a/payouts", headers=vendor).json()
    assert summary["payouts"][0]["platform_fee_cents"] == 6750
    assert summary["pending_cents"] == 38250


def test_requests_need_a_principal(client):
    assert client.get("/health").status_code == 200
    assert client.post("/bookings", json={"event_date": EVENT_DATE, "items": [{"service_id": "x"}]}).status_code == 401
    assert client.get("/bookings", headers={"X-Actor-Id": "x", "X-Actor-Role": "pirate"}).status_code == 401


def test_admin_routes_are_guarded(client, headers):
    customer = headers("customer-1", "customer", "anna@example.org")

    assert client.post("/maintenance/sweep", headers=customer).status_code == 403
    assert client.post("/vendors/vendor-a/compliance/approve", headers=customer).status_code == 403
    assert client.get("/vendors/vendor-a/compliance", headers=headers("vendor-b", "vendor")).status_code == 403


def test_webhook_rejects_bad_signatures(client, webhook_body):
    response = client.post(
        "/payments/webhook",
        content=webhook_body("order.paid", "order_unknown"),
        headers={"X-Razorpay-Signature": "forged", "X-Razorpay-Event-Id": "evt_bad"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_webhook_signature"


def test_webhook_skips_untracked_events(client):
    response = client.post(
        "/payments/webhook",
        content=b'{"event": "payment.authorized", "payload": {}}',
        headers={"X-Razorpay-Signature": "valid-signature", "X-Razorpay-Event-Id": "evt_auth"},
    )

    assert response.json()["result"] == "ignored"


def test_blocked_vendor_listing_is_not_published(client, headers):
    vendor = headers("vendor-new", "vendor")
    listing = client.post(
        "/listings",
        json={"category": "dj", "title": "Fresh beats", "base_price_cents": 50000},
        headers=vendor,
    )

    published = client.post(f"/listings/{listing.json()['id']}/publish", headers=vendor)

    assert published.status_code == 403
    assert published.json()["code"] == "publishing_blocked"


def test_counter_breakdown_is_typed(client, headers):
    customer = headers("customer-1", "customer", "anna@example.org")
    dj_vendor = headers("vendor-dj", "vendor")
    dj_id = _onboard_vendor(client, headers, "vendor-dj", "dj", 90000)
    booking = client.post(
        "/bookings",
        json={"event_date": EVENT_DATE, "items": [{"service_id": dj_id}]},
        headers=customer,
    ).json()
    counter_url = f"/bookings/{booking['id']}/items/{booking['items'][0]['id']}/counter"

    unknown = client.post(
        counter_url,
        json={"price_cents": 95000, "reason": "Extra hour", "breakdown": {"contact": "dj@example.org"}},
        headers=dj_vendor,
    )
    assert unknown.status_code == 422

    moderated = client.post(
        counter_url,
        json={"price_cents": 95000, "reason": "Extra hour", "breakdown": {"notes": "text me on telegram"}},
        headers=dj_vendor,
    )
    assert moderated.status_code == 400

    countered = client.post(
        counter_url,
        json={
            "price_cents": 95000,
            "reason": "Extra hour",
            "breakdown": {"extra_hours": 1, "travel_fee_cents": 2000},
        },
        headers=dj_vendor,
    )
    assert countered.status_code == 200
    events = countered.json()["items"][0]["events"]
    assert events[-1]["breakdown"] == {
        "travel_fee_cents": 2000,
        "extra_hours": 1.0,
        "equipment_fee_cents": None,
        "notes": None,
    }


def test_webhook_rejects_non_object_bodies(client):
    response = client.post(
        "/payments/webhook",
        content=b'[{"event": "order.paid"}]',
        headers={"X-Razorpay-Signature": "valid-signature", "X-Razorpay-Event-Id": "evt_list"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "validation_failed"
