"""
API tests for the cash session, sales, report and health endpoints.
"""

from cashdesk.services.fiscal_gateway import GatewayResult
from cashdesk.services.fiscal_service import GATEWAY_EXTENSION_KEY
from conftest import ScriptedGateway, ring_up


def _open(client, tenant, facility, operator, float_cents=500000):
    return client.post("/api/cash-sessions", json={
        "tenant_id": tenant.id,
        "facility_id": facility.id,
        "opening_float_cents": float_cents,
        "operator_id": operator.id,
    })


def _sale_payload(session_id, cashier_id, amount_cents, method="cash"):
    return {
        "session_id": session_id,
        "cashier_id": cashier_id,
        "items": [{"ref_id": "svc-1", "type": "service", "name": "Haircut", "qty": 1,
                   "unit_price_cents": amount_cents}],
        "payments": [{"method": method, "amount_cents": amount_cents}],
    }


# =============================================================================
# SESSIONS
# =============================================================================

def test_open_session(client, tenant, facility, operator):
    response = _open(client, tenant, facility, operator)

    assert response.status_code == 201
    session = response.get_json()["session"]
    assert session["status"] == "OPEN"
    assert session["opening_float_cents"] == 500000
    assert session["expected_cash_cents"] == 500000
    assert session["facility"]["name"] == "Downtown"


def test_open_session_twice_conflicts(client, tenant, facility, operator):
    assert _open(client, tenant, facility, operator).status_code == 201

    response = _open(client, tenant, facility, operator)
    assert response.status_code == 409
    assert response.get_json()["code"] == "CONFLICT"


def test_open_session_rejects_negative_float(client, tenant, facility, operator):
    response = _open(client, tenant, facility, operator, float_cents=-1)
    assert response.status_code == 400
    assert response.get_json()["error"]


def test_open_session_requires_tenant(client, facility, operator):
    response = client.post("/api/cash-sessions", json={"facility_id": facility.id, "operator_id": operator.id})
    assert response.status_code == 400


def test_unknown_session_is_404(client, db_session):
    response = client.get("/api/cash-sessions/9999")
    assert response.status_code == 404


def test_current_session(client, tenant, facility, operator):
    url = f"/api/cash-sessions/current?tenant_id={tenant.id}&facility_id={facility.id}"
    assert client.get(url).get_json()["session"] is None

    _open(client, tenant, facility, operator)
    assert client.get(url).get_json()["session"]["status"] == "OPEN"


def test_list_sessions_filters_by_status(client, tenant, facility, second_facility, operator):
    _open(client, tenant, facility, operator)
    second = _open(client, tenant, second_facility, operator).get_json()["session"]
    client.post(f"/api/cash-sessions/{second['id']}/close", json={
        "closing_count_cents": 500000, "operator_id": operator.id,
    })

    response = client.get(f"/api/cash-sessions?tenant_id={tenant.id}&status=CLOSED")
    assert response.status_code == 200
    sessions = response.get_json()["sessions"]
    assert [s["id"] for s in sessions] == [second["id"]]


def test_list_sessions_rejects_bad_date(client, tenant):
    response = client.get(f"/api/cash-sessions?tenant_id={tenant.id}&start=yesterday")
    assert response.status_code == 400


def test_count_verify_variance_close(client, open_session, cash_sale, operator):
    base = f"/api/cash-sessions/{open_session.id}"

    count = client.post(f"{base}/count", json={"counted_cash_cents": 615000})
    assert count.status_code == 200
    assert count.get_json()["result"]["variance"] == -5000
    assert count.get_json()["result"]["status"] == "acceptable"

    verify = client.post(f"{base}/verify", json={"actual_cash_cents": 615000, "operator_id": operator.id})
    assert verify.status_code == 200
    assert verify.get_json()["result"]["verified"] is True

    variance = client.post(f"{base}/variance", json={
        "actual_cash_cents": 590000,
        "operator_id": operator.id,
    })
    assert variance.status_code == 400

    variance = client.post(f"{base}/variance", json={
        "actual_cash_cents": 590000,
        "action": "investigate",
        "reason": "Drawer short after shift change",
        "operator_id": operator.id,
    })
    assert variance.status_code == 200
    assert variance.get_json()["result"]["severity"] == "warning"

    close = client.post(f"{base}/close", json={"closing_count_cents": 620000, "operator_id": operator.id})
    assert close.status_code == 200
    closed = close.get_json()["session"]
    assert closed["status"] == "CLOSED"
    assert closed["expected_cash_cents"] == 620000
    assert closed["variance_cents"] == 0

    again = client.post(f"{base}/close", json={"closing_count_cents": 620000, "operator_id": operator.id})
    assert again.status_code == 409

    events = client.get(f"{base}/events").get_json()["events"]
    assert [e["event_type"] for e in events] == [
        "SESSION_OPEN", "CASH_VERIFIED", "VARIANCE_HANDLED", "SESSION_CLOSE",
    ]


def test_reconciliation_endpoint(client, open_session, cash_sale, operator):
    response = client.get(f"/api/cash-sessions/{open_session.id}/reconciliation")
    assert response.status_code == 200
    report = response.get_json()["report"]
    assert report["provisional"] is True
    assert report["expected_cash"] == 620000
    assert report["totals_by_method"]["cash"] == 120000


# =============================================================================
# SALES
# =============================================================================

def test_create_sale_and_refund(client, open_session, operator):
    response = client.post("/api/sales", json=_sale_payload(open_session.id, operator.id, 45000))
    assert response.status_code == 201
    sale = response.get_json()["sale"]
    assert sale["number"] == "S-000001"
    assert sale["fiscal"]["status"] == "pending"

    refund = client.post(f"/api/sales/{sale['id']}/refund", json={
        "cashier_id": operator.id,
        "payments": [{"method": "cash", "amount_cents": 5000}],
        "reason": "Product returned",
    })
    assert refund.status_code == 201
    assert refund.get_json()["refund"]["refund_for_id"] == sale["id"]

    fetched = client.get(f"/api/sales/{sale['id']}").get_json()["sale"]
    assert fetched["status"] == "partial_refund"


def test_create_sale_rejects_mismatched_payments(client, open_session, operator):
    payload = _sale_payload(open_session.id, operator.id, 45000)
    payload["payments"][0]["amount_cents"] = 1000
    response = client.post("/api/sales", json=payload)
    assert response.status_code == 400


def test_create_sale_rejects_non_list_items(client, open_session, operator):
    payload = _sale_payload(open_session.id, operator.id, 45000)
    payload["items"] = "Haircut"
    assert client.post("/api/sales", json=payload).status_code == 400


def test_fiscalize_endpoint(app, client, cash_sale):
    gateway = ScriptedGateway(submit_results=[GatewayResult.success("FN-42")])
    app.extensions[GATEWAY_EXTENSION_KEY] = gateway

    response = client.post(f"/api/sales/{cash_sale.id}/fiscalize")
    assert response.status_code == 200
    fiscal = response.get_json()["sale"]["fiscal"]
    assert fiscal["status"] == "success"
    assert fiscal["fiscal_number"] == "FN-42"


def test_fiscalize_failure_passes_message_through(app, client, cash_sale):
    message = "Poreski identifikator nije validan. Kontaktirajte podrsku."
    app.extensions[GATEWAY_EXTENSION_KEY] = ScriptedGateway(submit_results=[GatewayResult.failed(message)])

    response = client.post(f"/api/sales/{cash_sale.id}/fiscalize")
    assert response.status_code == 502
    assert response.get_json() == {"error": message, "code": "EXTERNAL_ERROR"}

    reset = client.post(f"/api/sales/{cash_sale.id}/fiscalize/reset")
    assert reset.status_code == 200
    assert reset.get_json()["sale"]["fiscal"]["status"] == "pending"


def test_fiscalize_in_progress_after_retry(app, client, cash_sale):
    busy = GatewayResult.in_progress("Fiskalizacija je u toku")
    app.extensions[GATEWAY_EXTENSION_KEY] = ScriptedGateway(submit_results=[busy, busy])

    response = client.post(f"/api/sales/{cash_sale.id}/fiscalize")
    assert response.status_code == 502
    assert response.get_json()["code"] == "SUBMISSION_IN_PROGRESS"


# =============================================================================
# REPORTS / HEALTH
# =============================================================================

def test_daily_report_endpoint(client, open_session, operator, tenant):
    ring_up(open_session.id, operator.id, 10000, method="card")

    response = client.get(f"/api/cash-reports/daily?tenant_id={tenant.id}")
    assert response.status_code == 200
    report = response.get_json()
    assert report["period"] == "daily"
    assert report["summary"]["session_count"] == 1
    assert report["summary"]["provisional_count"] == 1


def test_daily_report_rejects_bad_date(client, tenant):
    response = client.get(f"/api/cash-reports/daily?tenant_id={tenant.id}&date=14.03.2026")
    assert response.status_code == 400


def test_weekly_and_monthly_report_endpoints(client, tenant):
    weekly = client.get(f"/api/cash-reports/weekly?tenant_id={tenant.id}&date=2026-03-18")
    assert weekly.status_code == 200
    assert weekly.get_json()["start"] == "2026-03-16T00:00:00Z"

    monthly = client.get(f"/api/cash-reports/monthly?tenant_id={tenant.id}&year=2026&month=2")
    assert monthly.status_code == 200
    assert monthly.get_json()["end"] == "2026-03-01T00:00:00Z"

    bad = client.get(f"/api/cash-reports/monthly?tenant_id={tenant.id}&year=2026&month=0")
    assert bad.status_code == 400


def test_analytics_requires_range(client, tenant):
    response = client.get(f"/api/cash-reports/analytics?tenant_id={tenant.id}")
    assert response.status_code == 400

    response = client.get(
        f"/api/cash-reports/analytics?tenant_id={tenant.id}&start=2026-03-01T00:00:00Z&end=2026-04-01T00:00:00Z"
    )
    assert response.status_code == 200
    assert response.get_json()["total_sessions"] == 0


def test_health(client, open_session):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["details"]["open_cash_sessions"] == 1
