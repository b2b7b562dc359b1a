API = "/api/billing"

CONSULT = {"description": "Consultation", "category": "doctor_fee",
           "unit_price": "500"}
CBC = {"description": "CBC", "category": "lab_test", "unit_price": "250",
       "quantity": 2}


def _create(client, **extra):
    body = {"patient_id": 1, "type": "opd", "items": [CONSULT, CBC], **extra}
    res = client.post(f"{API}/invoices", json=body)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def test_create_invoice_computes_totals(client):
    inv = _create(client, total_amount="1")

    assert inv["invoice_number"].startswith("INV")
    assert inv["status"] == "draft"
    assert inv["subtotal"] == "1000.00"
    assert inv["total_amount"] == "1000.00"
    assert inv["due_amount"] == "1000.00"
    assert inv["display"]["total_amount"] == "₹1,000.00"
    assert [it["seq"] for it in inv["items"]] == [1, 2]


def test_invoice_with_gst_rates(client):
    inv = _create(client, cgst_rate="0.09", sgst_rate="0.09",
                  discount_amount="100")
    assert inv["tax_details"]["cgst"]["amount"] == "81.00"
    assert inv["tax_details"]["sgst"]["amount"] == "81.00"
    assert inv["total_amount"] == "1062.00"


def test_engine_errors_use_error_envelope(client):
    res = client.post(f"{API}/invoices",
                      json={"patient_id": 1, "items": [
                          {**CONSULT, "category": "spa"}]})
    assert res.status_code == 400
    body = res.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"

    res = client.get(f"{API}/invoices/999")
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "NOT_FOUND"

    res = client.post(f"{API}/invoices", json={"type": "opd"})
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "REQUEST_INVALID"


def test_payment_flow(client):
    inv = _create(client)
    url = f"{API}/invoices/{inv['id']}"

    res = client.post(f"{url}/payments", json={"amount": "100", "method": "cash"})
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "INVALID_STATE"

    res = client.post(f"{url}/finalize")
    assert res.json()["data"]["status"] == "pending"

    res = client.post(f"{url}/payments", json={"amount": "1200", "method": "cash"})
    assert res.status_code == 400

    res = client.post(f"{url}/payments",
                      json={"amount": "400", "method": "upi",
                            "reference": "UTR-001"})
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["status"] == "partial"
    assert data["paid_amount"] == "400.00"
    assert data["due_amount"] == "600.00"
    assert data["payments"][0]["reference"] == "UTR-001"

    res = client.post(f"{url}/payments", json={"amount": "600", "method": "card"})
    assert res.json()["data"]["status"] == "paid"

    res = client.post(f"{url}/cancel", json={"reason": "late"})
    assert res.status_code == 409

    res = client.get(url)
    assert res.json()["data"]["status"] == "paid"


def test_draft_item_and_discount_edits(client):
    inv = _create(client)
    url = f"{API}/invoices/{inv['id']}"

    res = client.post(f"{url}/items",
                      json={"description": "Dressing", "category": "nursing",
                            "unit_price": "150"})
    data = res.json()["data"]
    assert data["total_amount"] == "1150.00"

    res = client.delete(f"{url}/items/{data['items'][0]['id']}")
    assert res.json()["data"]["total_amount"] == "650.00"

    res = client.patch(f"{url}/discount", json={"amount": "50",
                                                "reason": "senior"})
    data = res.json()["data"]
    assert data["discount_amount"] == "50.00"
    assert data["total_amount"] == "600.00"

    client.post(f"{url}/finalize")
    res = client.post(f"{url}/items", json=CONSULT)
    assert res.status_code == 409


def test_cancel_without_body(client):
    inv = _create(client, finalize=True)
    res = client.post(f"{API}/invoices/{inv['id']}/cancel")
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "cancelled"


def test_list_and_overdue(client):
    _create(client, patient_id=1)
    late = _create(client, patient_id=2, finalize=True,
                   due_date="2020-01-01T00:00:00")
    assert late["status"] == "overdue"

    res = client.get(f"{API}/invoices", params={"patient_id": 2})
    body = res.json()
    assert body["meta"]["count"] == 1
    assert body["data"][0]["id"] == late["id"]

    res = client.get(f"{API}/invoices", params={"status": "overdue"})
    assert res.json()["meta"]["count"] == 1

    res = client.post(f"{API}/invoices/refresh-overdue")
    assert res.json()["data"] == {"moved": 0}


def test_zero_quantity_item_is_rejected(client):
    inv = _create(client)
    res = client.post(f"{API}/invoices/{inv['id']}/items",
                      json={**CONSULT, "quantity": 0})
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"


def test_update_invoice_details(client):
    inv = _create(client, finalize=True, due_date="2099-01-01T00:00:00")
    url = f"{API}/invoices/{inv['id']}"
    assert inv["status"] == "pending"

    res = client.patch(url, json={"notes": "corporate tie-up",
                                  "due_date": "2020-01-01T00:00:00"})
    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert data["status"] == "overdue"
    assert data["notes"] == "corporate tie-up"

    res = client.patch(url, json={"due_date": "2099-01-01T00:00:00"})
    assert res.json()["data"]["status"] == "pending"

    client.post(f"{url}/cancel", json={"reason": "duplicate"})
    res = client.patch(url, json={"notes": "again"})
    assert res.status_code == 409


def test_list_reports_current_status_and_date_range(client):
    inv = _create(client, finalize=True, due_date="2099-01-01T00:00:00")
    client.patch(f"{API}/invoices/{inv['id']}",
                 json={"due_date": "2020-01-01T00:00:00"})

    res = client.get(f"{API}/invoices", params={"status": "pending"})
    assert res.json()["meta"]["count"] == 0

    res = client.get(f"{API}/invoices", params={"status": "overdue"})
    assert [r["id"] for r in res.json()["data"]] == [inv["id"]]

    res = client.get(f"{API}/invoices",
                     params={"start_date": "2000-01-01T00:00:00",
                             "end_date": "2001-01-01T00:00:00"})
    assert res.json()["meta"]["count"] == 0

    res = client.get(f"{API}/invoices",
                     params={"start_date": "2000-01-01T00:00:00"})
    assert res.json()["meta"]["count"] == 1


def test_ledger_endpoints(client):
    bed = client.post("/api/ipd/beds", json={"bed_number": "GEN-101",
                                             "ward": "Ward A",
                                             "price_per_day": "500"})
    res = client.post("/api/ipd/admissions",
                      json={"patient_id": 7, "bed_id": bed.json()["data"]["id"]})
    assert res.status_code == 201, res.text
    adm = res.json()["data"]["admission"]
    stay_inv = res.json()["data"]["invoice"]

    res = client.post(f"{API}/ledger", json={
        "admission_id": adm["id"], "category": "nursing",
        "description": "Wound dressing", "unit_price": "150",
        "source_type": "nursing", "auto_attach_invoice": False})
    assert res.status_code == 201, res.text
    data = res.json()["data"]
    assert data["invoice"] is None
    assert data["entry"]["billed"] is False
    assert data["entry"]["patient_id"] == 7
    assert data["entry"]["amount"] == "150.00"

    res = client.get(f"{API}/ledger", params={"admission_id": adm["id"],
                                              "billed": False})
    assert res.json()["meta"]["count"] == 1

    res = client.post(f"{API}/ledger/generate-invoice",
                      json={"admission_id": adm["id"]})
    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert data["attached"] == 1
    assert data["invoice"]["id"] == stay_inv["id"]
    assert "nursing" in {it["category"] for it in data["invoice"]["items"]}

    res = client.get(f"{API}/ledger", params={"billed": True})
    assert res.json()["data"][0]["invoice_id"] == stay_inv["id"]

    res = client.post(f"{API}/ledger", json={
        "patient_id": 7, "category": "spa", "description": "x",
        "unit_price": "1"})
    assert res.status_code == 400

    res = client.post(f"{API}/ledger/generate-invoice",
                      json={"admission_id": 404})
    assert res.status_code == 404


def test_app_lifespan_and_fallback_error_code(client):
    with client:
        res = client.get("/")
        assert res.status_code == 200
        assert res.json()["version"] == "v1"

        res = client.get(f"{API}/no-such-route")
        assert res.status_code == 404
        assert res.json() == {"ok": False, "error": {
            "msg": "Not Found", "code": "NOT_FOUND", "details": None}}
