"""
HTTP adapter: JSON shaping and the error contract.

Users are created with last_reset=None so the wall clock never triggers a
monthly reset mid-test.
"""
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from studio_quota.core.admin_auth import AdminAllowList
from studio_quota.core.database import get_engine, guest_grants, purchase_grants
from studio_quota.main import app

client = TestClient(app)


def test_get_allowance_shape(make_user, add_grant):
    make_user("u1", plan_tier="basic", base_used=10, last_reset=None)
    add_grant("u1", granted=5, used=5)

    resp = client.get("/api/allowance/u1")

    assert resp.status_code == 200
    body = resp.json()
    assert body["remaining"] == 25
    assert body["total_limit"] == 35
    assert body["display_limit"] == 30
    assert body["can_upload"] is True
    assert body["unlimited"] is False


def test_consume_returns_bucket_and_allowance(make_user, add_grant):
    make_user("u1", plan_tier="free", last_reset=None)
    add_grant("u1", granted=1)

    first = client.post("/api/allowance/u1/consume").json()
    second = client.post("/api/allowance/u1/consume").json()

    assert first["bucket"] == "credit"
    assert second["bucket"] == "base"
    assert second["allowance"]["remaining"] == 4


def test_quota_exceeded_contract(make_user):
    make_user("u1", plan_tier="free", base_used=5, last_reset=None)

    resp = client.post("/api/allowance/u1/consume", headers={"x-request-id": "rid-quota"})

    assert resp.status_code == 403
    payload = resp.json()
    assert payload["error"]["code"] == "quota_exceeded"
    assert payload["error"]["request_id"] == "rid-quota"
    assert resp.headers["x-request-id"] == "rid-quota"


def test_unknown_user_consume_is_404():
    resp = client.post("/api/allowance/ghost/consume")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_admin_allowance_serialises_unlimited_as_null(make_user):
    make_user("boss", email="admin@studio.test", last_reset=None)
    admins = AdminAllowList.of(emails=["admin@studio.test"])

    with patch("studio_quota.features.allowance.service.get_admin_allow_list", return_value=admins):
        resp = client.get("/api/allowance/boss")

    body = resp.json()
    assert resp.status_code == 200
    assert body["unlimited"] is True
    assert body["remaining"] is None
    assert body["can_upload"] is True


def test_stats_endpoint(make_user, add_grant):
    make_user("u1", plan_tier="pro", base_used=2, last_reset=None)
    add_grant("u1", granted=3, amount=499)

    body = client.get("/api/allowance/u1/stats").json()

    assert body["upload_limit"] == 60
    assert body["credits"]["available"] == 3
    assert body["purchases"][0]["amount"] == 499


def test_guest_flow(make_user, add_guest_grant):
    assert client.get("/api/guest/sess_1/allowance").json() == {
        "remaining": 3,
        "limit": 3,
        "source": "default",
        "degraded": False,
        "can_upload": True,
    }

    add_guest_grant("sess_1", granted=1)
    consumed = client.post("/api/guest/sess_1/consume").json()
    assert consumed["allowance"]["remaining"] == 0

    resp = client.post("/api/guest/sess_1/consume")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "quota_exceeded"


def test_guest_transfer_endpoint(make_user, add_guest_grant):
    make_user("u1", last_reset=None)
    add_guest_grant("sess_1", granted=2)

    first = client.post("/api/guest/sess_1/transfer/u1").json()
    second = client.post("/api/guest/sess_1/transfer/u1").json()

    assert first["transferred"] is True
    assert first["grant"]["granted_units"] == 2
    assert second == {"transferred": False, "grant": None}


def test_store_failure_is_503(make_user):
    make_user("u1", last_reset=None)
    failure = OperationalError("SELECT", {}, Exception("server closed the connection"))
    with patch("studio_quota.features.allowance.service.load_grants", side_effect=failure):
        resp = client.get("/api/allowance/u1")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"


def test_consume_endpoint_degrades_without_grants_table(make_user):
    make_user("u1", base_used=1, last_reset=None)
    purchase_grants.drop(get_engine())

    resp = client.post("/api/allowance/u1/consume")

    body = resp.json()
    assert resp.status_code == 200
    assert body["bucket"] == "base"
    assert body["allowance"]["degraded"] is True
    assert body["allowance"]["can_upload"] is True


def test_guest_endpoints_stay_up_without_guest_table():
    guest_grants.drop(get_engine())

    read = client.get("/api/guest/sess_1/allowance")
    consumed = client.post("/api/guest/sess_1/consume")

    assert read.status_code == 200
    assert read.json()["degraded"] is True
    assert consumed.status_code == 200
    assert consumed.json()["grant_id"] is None
