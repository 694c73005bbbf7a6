import csv
import io
from concurrent.futures import ThreadPoolExecutor


def create_courier(client, **overrides):
    payload = {
        "name": "SpeedyShip",
        "prefix": "SS",
        "startingTrackingNumber": 1000,
        "endTrackingNumber": 1011,
        "charges": {"air": 120, "surface": 60},
        "defaultShipmentMethod": "surface",
    }
    payload.update(overrides)
    res = client.post("/api/couriers", json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def slip_payload(courier_id, **overrides):
    payload = {
        "courierId": courier_id,
        "customerName": "Asha Traders",
        "customerAddress": "12 Market Road",
        "customerMobile": "9876543210",
        "senderName": "Main Warehouse",
        "method": "air",
        "weight": 2.5,
        "numberOfBoxes": 1,
        "generatedBy": "operator",
    }
    payload.update(overrides)
    return payload


# ---------------------------
# Couriers
# ---------------------------
def test_courier_crud(api_client):
    courier = create_courier(api_client)
    assert courier["currentTrackingNumber"] == 1000
    assert courier["charges"] == {"air": 120, "surface": 60}
    assert courier["expressCharges"] is None

    res = api_client.patch(f"/api/couriers/{courier['id']}", json={"endTrackingNumber": 5000, "expressPrefix": "XP"})
    assert res.status_code == 200
    assert res.json()["endTrackingNumber"] == 5000
    assert res.json()["expressPrefix"] == "XP"

    names = [c["name"] for c in api_client.get("/api/couriers").json()]
    assert names == ["SpeedyShip"]
    assert api_client.get(f"/api/couriers/{courier['id']}").json()["endTrackingNumber"] == 5000

    res = api_client.delete(f"/api/couriers/{courier['id']}")
    assert res.json() == {"message": "Courier deleted successfully"}
    res = api_client.get(f"/api/couriers/{courier['id']}")
    assert res.status_code == 404
    assert res.json() == {"error": "Courier not found"}


def test_courier_express_current_defaults_to_starting(api_client):
    courier = create_courier(api_client, expressStartingTrackingNumber=5000, expressEndTrackingNumber=9999)
    assert courier["expressCurrentTrackingNumber"] == 5000


def test_patch_and_delete_unknown_courier(api_client):
    assert api_client.patch("/api/couriers/missing", json={"name": "x"}).status_code == 404
    assert api_client.delete("/api/couriers/missing").status_code == 404


# ---------------------------
# Tracking number allocation
# ---------------------------
def test_increment_tracking_number(api_client):
    courier = create_courier(api_client)

    res = api_client.post(f"/api/couriers/{courier['id']}/increment-tracking-number", json={})

    assert res.status_code == 200
    assert res.json() == {"newNumber": 1001, "remainingCount": 10, "isLow": True}
    assert api_client.get(f"/api/couriers/{courier['id']}").json()["currentTrackingNumber"] == 1001


def test_increment_express_tracking_number(api_client):
    courier = create_courier(api_client, expressCurrentTrackingNumber=4999,
                             expressStartingTrackingNumber=4000, expressEndTrackingNumber=9999)

    res = api_client.post(f"/api/couriers/{courier['id']}/increment-tracking-number",
                          json={"isExpressMode": True})

    assert res.json() == {"newNumber": 5000, "remainingCount": 4999, "isLow": False}
    refreshed = api_client.get(f"/api/couriers/{courier['id']}").json()
    assert refreshed["currentTrackingNumber"] == 1000
    assert refreshed["expressCurrentTrackingNumber"] == 5000


def test_increment_unknown_courier(api_client):
    res = api_client.post("/api/couriers/missing/increment-tracking-number", json={})
    assert res.status_code == 404
    assert res.json() == {"error": "Courier not found"}


def test_increment_error_statuses(api_client):
    plain = create_courier(api_client)
    custom = create_courier(api_client, name="Manual", isCustomCourier=True)
    full = create_courier(api_client, name="Full", currentTrackingNumber=1011)

    res = api_client.post(f"/api/couriers/{plain['id']}/increment-tracking-number", json={"isExpressMode": True})
    assert res.status_code == 422
    assert res.json() == {"error": "Express range not configured for courier"}

    res = api_client.post(f"/api/couriers/{custom['id']}/increment-tracking-number", json={})
    assert res.status_code == 400

    res = api_client.post(f"/api/couriers/{full['id']}/increment-tracking-number", json={})
    assert res.status_code == 409
    assert res.json() == {"error": "Tracking number range exhausted"}


def test_allocation_is_audited(api_client):
    courier = create_courier(api_client)
    api_client.post(f"/api/couriers/{courier['id']}/increment-tracking-number", json={})

    logs = api_client.get("/api/audit-logs", params={"entity": "courier"}).json()

    assert [log["action"] for log in logs] == ["allocate", "create"]
    assert logs[0]["details"] == "number=1001, express=False"


# ---------------------------
# Express mode switch
# ---------------------------
def test_express_mode_setting(api_client):
    assert api_client.get("/api/express-mode").json()["isEnabled"] is False

    res = api_client.put("/api/express-mode", json={"isEnabled": True, "updatedBy": "admin"})

    assert res.json()["isEnabled"] is True
    assert res.json()["updatedBy"] == "admin"
    assert api_client.get("/api/express-mode").json()["isEnabled"] is True


# ---------------------------
# Slips
# ---------------------------
def test_generate_slip_allocates_tracking_id(api_client):
    courier = create_courier(api_client, endTrackingNumber=2000)

    res = api_client.post("/api/slips", json=slip_payload(courier["id"]))

    assert res.status_code == 201
    slip = res.json()
    assert slip["trackingId"] == "SS1001"
    assert slip["courierName"] == "SpeedyShip"
    assert slip["isExpressMode"] is False
    assert slip["trackingWarning"] == {"isLow": False, "remainingCount": 999}
    second = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()
    assert second["trackingId"] == "SS1002"


def test_generate_slip_low_range_warning(api_client):
    courier = create_courier(api_client)

    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    assert slip["trackingWarning"] == {"isLow": True, "remainingCount": 10}


def test_generate_slip_follows_global_express_mode(api_client):
    courier = create_courier(api_client, expressStartingTrackingNumber=4999, expressEndTrackingNumber=9999)
    api_client.put("/api/express-mode", json={"isEnabled": True})

    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    assert slip["trackingId"] == "EX-SS5000"
    assert slip["isExpressMode"] is True
    assert api_client.get(f"/api/couriers/{courier['id']}").json()["currentTrackingNumber"] == 1000


def test_generate_slip_custom_courier_uses_manual_id(api_client):
    courier = create_courier(api_client, name="Manual", isCustomCourier=True)

    res = api_client.post("/api/slips", json=slip_payload(courier["id"]))
    assert res.status_code == 400
    assert res.json() == {"error": "Tracking ID is required for custom courier"}

    res = api_client.post("/api/slips", json=slip_payload(courier["id"], trackingId="  MAN-77 "))
    assert res.status_code == 201
    assert res.json()["trackingId"] == "MAN-77"
    assert res.json()["trackingWarning"] is None

    res = api_client.post("/api/slips", json=slip_payload(courier["id"], trackingId="MAN-77"))
    assert res.status_code == 409


def test_generate_slip_failures_consume_no_number(api_client):
    courier = create_courier(api_client, currentTrackingNumber=1011)

    res = api_client.post("/api/slips", json=slip_payload(courier["id"]))
    assert res.status_code == 409
    res = api_client.post("/api/slips", json=slip_payload("missing"))
    assert res.status_code == 404

    assert api_client.get("/api/slips").json() == []
    assert api_client.get(f"/api/couriers/{courier['id']}").json()["currentTrackingNumber"] == 1011


def test_slip_keeps_issued_tracking_id_after_reconfiguration(api_client):
    courier = create_courier(api_client, endTrackingNumber=2000)
    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    api_client.patch(f"/api/couriers/{courier['id']}", json={"prefix": "ZZ", "currentTrackingNumber": 1500})

    assert api_client.get(f"/api/slips/{slip['id']}").json()["trackingId"] == "SS1001"


def test_concurrent_slip_generation_issues_unique_ids(api_client):
    from server.app.api import SlipIn, create_slip

    courier = create_courier(api_client, endTrackingNumber=5000)
    body = SlipIn(**slip_payload(courier["id"]))

    with ThreadPoolExecutor(max_workers=8) as pool:
        slips = list(pool.map(lambda _: create_slip(body), range(25)))

    ids = sorted(s["trackingId"] for s in slips)
    assert ids == sorted(f"SS{n}" for n in range(1001, 1026))
    assert api_client.get(f"/api/couriers/{courier['id']}").json()["currentTrackingNumber"] == 1025


def test_pack_slip(api_client):
    courier = create_courier(api_client)
    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    assert api_client.patch(f"/api/slips/{slip['id']}/packed", json={}).status_code == 400

    res = api_client.patch(f"/api/slips/{slip['id']}/packed", json={"username": "packer1"})
    assert res.status_code == 200
    assert res.json()["isPacked"] is True
    assert res.json()["packedBy"] == "packer1"

    res = api_client.patch(f"/api/slips/{slip['id']}/packed", json={"username": "packer2"})
    assert res.status_code == 400
    assert res.json() == {"error": "Slip is already packed"}
    assert api_client.patch("/api/slips/999/packed", json={"username": "x"}).status_code == 404


def test_record_box_weights(api_client):
    courier = create_courier(api_client)
    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    res = api_client.patch(f"/api/slips/{slip['id']}/box-weights",
                           json={"boxWeights": [1.25, 2.5, 0.75], "weighedBy": "scale1"})

    body = res.json()
    assert body["numberOfBoxes"] == 3
    assert body["weight"] == 4.5
    assert body["boxWeights"] == [1.25, 2.5, 0.75]
    assert body["weighedBy"] == "scale1"
    assert body["weighedAt"]
    bad = api_client.patch(f"/api/slips/{slip['id']}/box-weights", json={"boxWeights": [1, 0]})
    assert bad.status_code == 400


def test_cancel_slip_keeps_counter(api_client):
    courier = create_courier(api_client)
    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    res = api_client.post(f"/api/slips/{slip['id']}/cancel")
    assert res.json()["isCancelled"] is True
    assert api_client.post(f"/api/slips/{slip['id']}/cancel").status_code == 400
    assert api_client.get(f"/api/couriers/{courier['id']}").json()["currentTrackingNumber"] == 1001


# ---------------------------
# Reports
# ---------------------------
def test_report_summary_and_export(api_client):
    courier = create_courier(api_client, endTrackingNumber=2000)
    first = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()
    api_client.post("/api/slips", json=slip_payload(courier["id"]))
    api_client.patch(f"/api/slips/{first['id']}/packed", json={"username": "packer"})

    summary = api_client.get("/api/reports/summary").json()
    assert summary["generated"] == 2
    assert summary["packed"] == 1
    assert summary["cancelled"] == 0

    res = api_client.get("/api/reports/export", params={"fmt": "csv"})
    assert res.headers["content-type"].startswith("text/csv")
    rows = list(csv.DictReader(io.StringIO(res.text)))
    assert [r["tracking_id"] for r in rows] == ["SS1001", "SS1002"]

    res = api_client.get("/api/reports/export", params={"fmt": "xlsx"})
    assert res.status_code == 200
    assert res.content[:2] == b"PK"


def test_report_summary_filters_by_period(api_client):
    courier = create_courier(api_client, endTrackingNumber=2000)
    api_client.post("/api/slips", json=slip_payload(courier["id"]))

    summary = api_client.get("/api/reports/summary", params={"period": "yearly", "date": "1999"}).json()

    assert summary["generated"] == 0
    assert summary["items"] == []


# ---------------------------
# Request validation
# ---------------------------
def test_malformed_body_is_400_with_error_message(api_client):
    courier = create_courier(api_client)

    res = api_client.post(f"/api/couriers/{courier['id']}/increment-tracking-number",
                          json={"isExpressMode": "notabool"})

    assert res.status_code == 400
    assert "isExpressMode" in res.json()["error"]
    assert api_client.get(f"/api/couriers/{courier['id']}").json()["currentTrackingNumber"] == 1000


def test_patch_courier_rejects_null_for_required_fields(api_client):
    courier = create_courier(api_client)

    for field in ("name", "startingTrackingNumber", "endTrackingNumber"):
        res = api_client.patch(f"/api/couriers/{courier['id']}", json={field: None})
        assert res.status_code == 400, field
        assert field in res.json()["error"]

    unchanged = api_client.get(f"/api/couriers/{courier['id']}").json()
    assert unchanged["name"] == "SpeedyShip"
    assert unchanged["endTrackingNumber"] == 1011


# ---------------------------
# Customers and sender addresses
# ---------------------------
def create_customer(client, **overrides):
    payload = {
        "name": "Asha Traders",
        "mobile": "9876543210",
        "mobile2": "9123456780",
        "address": {"addressLine1": "12 Market Road", "landmark": "Clock Tower",
                    "city": "Pune", "state": "Maharashtra", "pincode": "411001"},
        "defaultToPayShipping": True,
    }
    payload.update(overrides)
    res = client.post("/api/customers", json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def create_sender(client, **overrides):
    payload = {"name": "Main Warehouse", "address": {"addressLine1": "Plot 4", "city": "Nashik",
                                                     "district": "Nashik", "state": "Maharashtra"}}
    payload.update(overrides)
    res = client.post("/api/sender-addresses", json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def test_customer_crud(api_client):
    customer = create_customer(api_client)
    assert customer["address"]["city"] == "Pune"
    assert "district" not in customer["address"]

    assert [c["name"] for c in api_client.get("/api/customers", params={"q": "asha"}).json()] == ["Asha Traders"]
    assert api_client.get("/api/customers", params={"q": "98765"}).json()[0]["id"] == customer["id"]
    assert api_client.get("/api/customers", params={"q": "nobody"}).json() == []

    res = api_client.patch(f"/api/customers/{customer['id']}", json={"notes": "call first", "address": {"city": "Mumbai"}})
    assert res.status_code == 200
    assert res.json()["notes"] == "call first"
    assert res.json()["address"]["city"] == "Mumbai"
    assert res.json()["address"]["addressLine1"] == "12 Market Road"

    assert api_client.patch(f"/api/customers/{customer['id']}", json={"name": None}).status_code == 400

    res = api_client.delete(f"/api/customers/{customer['id']}")
    assert res.json() == {"message": "Customer deleted successfully"}
    res = api_client.get(f"/api/customers/{customer['id']}")
    assert res.status_code == 404
    assert res.json() == {"error": "Customer not found"}


def test_sender_address_default_handling(api_client):
    first = create_sender(api_client)
    assert first["isDefault"] is True

    second = create_sender(api_client, name="Branch Office", isDefault=True)
    defaults = {s["name"]: s["isDefault"] for s in api_client.get("/api/sender-addresses").json()}
    assert defaults == {"Branch Office": True, "Main Warehouse": False}

    api_client.patch(f"/api/sender-addresses/{first['id']}", json={"isDefault": True})
    assert api_client.get(f"/api/sender-addresses/{second['id']}").json()["isDefault"] is False

    res = api_client.delete(f"/api/sender-addresses/{first['id']}")
    assert res.json() == {"message": "Sender address deleted successfully"}
    assert api_client.get(f"/api/sender-addresses/{second['id']}").json()["isDefault"] is True

    res = api_client.delete(f"/api/sender-addresses/{second['id']}")
    assert res.status_code == 400
    assert res.json() == {"error": "Cannot delete the only sender address"}
    assert api_client.get("/api/sender-addresses/missing").status_code == 404


def test_generate_slip_copies_customer_and_sender(api_client):
    courier = create_courier(api_client)
    customer = create_customer(api_client)
    sender = create_sender(api_client)
    payload = slip_payload(courier["id"], customerId=customer["id"], senderAddressId=sender["id"])
    for key in ("customerName", "customerAddress", "customerMobile", "senderName"):
        payload.pop(key)

    slip = api_client.post("/api/slips", json=payload).json()

    assert slip["customerId"] == customer["id"]
    assert slip["customerName"] == "Asha Traders"
    assert slip["customerAddress"] == "12 Market Road, Near Clock Tower, Pune, Maharashtra, 411001"
    assert slip["customerMobile"] == "9876543210/9123456780"
    assert slip["senderName"] == "Main Warehouse"
    assert slip["senderAddress"] == "Plot 4, Nashik, Nashik, Maharashtra"
    assert slip["isToPayShipping"] is True


def test_generate_slip_request_values_override_customer(api_client):
    courier = create_courier(api_client)
    customer = create_customer(api_client)

    slip = api_client.post("/api/slips", json=slip_payload(courier["id"], customerId=customer["id"],
                                                           customerName="Asha (Godown)",
                                                           isToPayShipping=False)).json()

    assert slip["customerName"] == "Asha (Godown)"
    assert slip["customerMobile"] == "9876543210"
    assert slip["isToPayShipping"] is False


def test_generate_slip_unknown_customer_consumes_no_number(api_client):
    courier = create_courier(api_client)

    res = api_client.post("/api/slips", json=slip_payload(courier["id"], customerId="missing"))
    assert res.status_code == 404
    assert res.json() == {"error": "Customer not found"}
    res = api_client.post("/api/slips", json=slip_payload(courier["id"], senderAddressId="missing"))
    assert res.status_code == 404

    assert api_client.get(f"/api/couriers/{courier['id']}").json()["currentTrackingNumber"] == 1000
    assert api_client.get("/api/slips").json() == []


# ---------------------------
# Slip edits
# ---------------------------
def test_update_slip_fields(api_client):
    courier = create_courier(api_client)
    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    res = api_client.patch(f"/api/slips/{slip['id']}",
                           json={"method": "surface", "charges": 75, "customerName": "Asha Traders Pvt"})

    assert res.status_code == 200
    body = res.json()
    assert (body["method"], body["charges"], body["customerName"]) == ("surface", 75, "Asha Traders Pvt")
    assert body["trackingId"] == slip["trackingId"]
    logs = api_client.get("/api/audit-logs", params={"entity": "slip", "action": "update"}).json()
    assert logs[0]["details"] == "fields=charges,customer_name,method"


def test_update_slip_cannot_change_tracking_id(api_client):
    courier = create_courier(api_client)
    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    res = api_client.patch(f"/api/slips/{slip['id']}", json={"trackingId": "SS9999", "method": "surface"})

    assert res.status_code == 400
    assert "trackingId" in res.json()["error"]
    stored = api_client.get(f"/api/slips/{slip['id']}").json()
    assert stored["trackingId"] == slip["trackingId"]
    assert stored["method"] == "air"


def test_update_slip_links_customer(api_client):
    courier = create_courier(api_client)
    customer = create_customer(api_client)
    slip = api_client.post("/api/slips", json=slip_payload(courier["id"])).json()

    body = api_client.patch(f"/api/slips/{slip['id']}", json={"customerId": customer["id"]}).json()

    assert body["customerMobile"] == "9876543210/9123456780"
    assert body["customerAddress"].startswith("12 Market Road, Near Clock Tower")
    assert api_client.patch(f"/api/slips/{slip['id']}", json={"customerId": "missing"}).status_code == 404


def test_update_unknown_slip(api_client):
    res = api_client.patch("/api/slips/999", json={"method": "air"})
    assert res.status_code == 404
    assert res.json() == {"error": "Slip not found"}


# ---------------------------
# Audit log queries
# ---------------------------
def test_audit_logs_filter_by_action_and_date(api_client):
    courier = create_courier(api_client)
    api_client.post(f"/api/couriers/{courier['id']}/increment-tracking-number", json={})
    api_client.patch(f"/api/couriers/{courier['id']}", json={"prefix": "SP"})

    logs = api_client.get("/api/audit-logs", params={"action": "update"}).json()
    assert [(log["entity"], log["details"]) for log in logs] == [("courier", "fields=prefix")]

    window = {"startDate": "2000-01-01T00:00:00", "endDate": "2999-01-01T00:00:00"}
    assert len(api_client.get("/api/audit-logs", params={"entity": "courier", **window}).json()) == 3
    past = {"startDate": "2000-01-01T00:00:00", "endDate": "2000-12-31T00:00:00"}
    assert api_client.get("/api/audit-logs", params=past).json() == []
    assert api_client.get("/api/audit-logs", params={"startDate": "2999-01-01T00:00:00Z"}).json() == []
    assert api_client.get("/api/audit-logs", params={"startDate": "yesterday"}).status_code == 400


def test_get_audit_log(api_client):
    create_courier(api_client)
    latest = api_client.get("/api/audit-logs").json()[0]

    res = api_client.get(f"/api/audit-logs/{latest['id']}")
    assert res.status_code == 200
    assert res.json() == latest

    res = api_client.get("/api/audit-logs/99999")
    assert res.status_code == 404
    assert res.json() == {"error": "Audit log not found"}
