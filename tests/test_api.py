import uuid

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

import api
from api import app, get_uow
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork

ADMIN_PHONE = "555-0001"


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(api.settings, "admin_phone", ADMIN_PHONE)
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


_phone = [2000]


def _auth(user_id):
    return {"Authorization": f"Bearer {user_id}"}


def _register(client, admin, role="STAFF"):
    _phone[0] += 1
    resp = client.post(
        "/api/v1/users",
        json={"phone": f"555-{_phone[0]}", "role": role},
        headers=_auth(admin),
    )
    assert resp.status_code == 201
    return resp.json()["data"]["id"]


@pytest.fixture
def admin(client, db):
    with InMemoryUnitOfWork(db) as uow:
        seeded = uow.users.get_by_phone(ADMIN_PHONE)
    assert seeded is not None
    return str(seeded.id)


@pytest.fixture
def branch(client, admin):
    resp = client.post("/api/v1/branches", json={"name": "Harbour"}, headers=_auth(admin))
    assert resp.status_code == 201
    return resp.json()["data"]["id"]


def _stages(client, admin):
    resp = client.get("/api/v1/admin/stages", headers=_auth(admin))
    assert resp.status_code == 200
    return {s["name"]: s["id"] for s in resp.json()["data"]}


def _assign(client, admin, stage, *user_ids):
    stage_id = _stages(client, admin)[stage]
    resp = client.patch(
        f"/api/v1/admin/stages/{stage_id}/assign-users",
        json={"user_ids": list(user_ids)},
        headers=_auth(admin),
    )
    assert resp.status_code == 200


def _order_body(branch, needs_design=False):
    return {
        "customer_phone": "555-7777",
        "customer_name": "Ada",
        "branch_id": branch,
        "products": [
            {
                "name": "Poster",
                "width": 50,
                "height": 70,
                "quantity": 2,
                "price": 30,
                "paper_type": "MATTE",
                "needs_design": needs_design,
            }
        ],
    }


def _create_order(client, user, branch, needs_design=False):
    resp = client.post(
        "/api/v1/orders", json=_order_body(branch, needs_design), headers=_auth(user)
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_stages_are_created_at_startup(client, admin):
    assert list(_stages(client, admin)) == [
        "WAITING", "DESIGN", "PRINT_READY", "PRINTING", "CUT", "COMPLETED", "DELIVERED",
    ]


def test_missing_or_unknown_token_is_unauthorized(client):
    assert client.get("/api/v1/orders/available").status_code == 401
    resp = client.get("/api/v1/orders/available", headers=_auth("not-a-uuid"))
    assert resp.status_code == 401
    resp = client.get("/api/v1/orders/available", headers=_auth(uuid.uuid4()))
    assert resp.status_code == 401


def test_admin_routes_reject_staff(client, admin):
    staff = _register(client, admin)
    resp = client.get("/api/v1/admin/audit-logs", headers=_auth(staff))
    assert resp.status_code == 403
    assert client.get("/api/v1/users", headers=_auth(staff)).status_code == 403


def test_claim_and_advance_status_codes(client, admin, branch):
    a, b, outsider = (_register(client, admin) for _ in range(3))
    _assign(client, admin, "WAITING", a, b)
    order = _create_order(client, a, branch)

    resp = client.post("/api/v1/stage-claims", json={"order_id": order["id"]}, headers=_auth(a))
    assert resp.status_code == 201
    claim = resp.json()["data"]
    assert claim["stage"] == "WAITING"

    resp = client.post("/api/v1/stage-claims", json={"order_id": order["id"]}, headers=_auth(b))
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Order is already actively claimed."

    resp = client.patch(f"/api/v1/stage-claims/{claim['id']}/advance", headers=_auth(b))
    assert resp.status_code == 403

    resp = client.patch(f"/api/v1/stage-claims/{claim['id']}/advance", headers=_auth(a))
    assert resp.status_code == 200
    assert resp.json()["data"]["completed_at"] is not None

    resp = client.patch(f"/api/v1/stage-claims/{claim['id']}/advance", headers=_auth(a))
    assert resp.status_code == 400

    resp = client.get(f"/api/v1/orders/{order['id']}", headers=_auth(outsider))
    assert resp.json()["data"]["current_stage"] == "PRINT_READY"

    resp = client.post("/api/v1/stage-claims", json={"order_id": order["id"]}, headers=_auth(outsider))
    assert resp.status_code == 403

    resp = client.patch(f"/api/v1/stage-claims/{uuid.uuid4()}/advance", headers=_auth(a))
    assert resp.status_code == 404


def test_admin_reassign_override_and_audit(client, admin, branch):
    a, d = _register(client, admin), _register(client, admin)
    _assign(client, admin, "WAITING", a)
    order = _create_order(client, a, branch, needs_design=True)

    resp = client.post(
        "/api/v1/admin/reassign-claim",
        json={"order_id": order["id"], "new_user_id": d},
        headers=_auth(admin),
    )
    assert resp.status_code == 409

    claim = client.post(
        "/api/v1/stage-claims", json={"order_id": order["id"]}, headers=_auth(a)
    ).json()["data"]
    resp = client.post(
        "/api/v1/admin/reassign-claim",
        json={"order_id": order["id"], "new_user_id": d},
        headers=_auth(admin),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["user_id"] == d

    resp = client.post(
        "/api/v1/admin/reassign-claim",
        json={"order_id": order["id"], "new_user_id": admin},
        headers=_auth(admin),
    )
    assert resp.status_code == 404

    resp = client.patch(
        f"/api/v1/admin/orders/{order['id']}/stage",
        json={"stage": "PRINTING"},
        headers=_auth(admin),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["current_stage"] == "PRINTING"

    log = client.get("/api/v1/admin/audit-logs", headers=_auth(admin)).json()["data"]
    assert [e["claim_id"] for e in log] == [claim["id"]]
    assert log[0]["user_id"] == d


def test_my_assignments_and_available(client, admin, branch):
    a = _register(client, admin)
    _assign(client, admin, "WAITING", a)
    first = _create_order(client, a, branch)
    second = _create_order(client, a, branch)

    available = client.get("/api/v1/orders/available", headers=_auth(a)).json()["data"]
    assert {o["id"] for o in available} == {first["id"], second["id"]}

    client.post("/api/v1/stage-claims", json={"order_id": first["id"]}, headers=_auth(a))
    available = client.get("/api/v1/orders/available", headers=_auth(a)).json()["data"]
    assert [o["id"] for o in available] == [second["id"]]

    active = client.get("/api/v1/stage-claims/my-assignments/active", headers=_auth(a)).json()
    assert [x["order"]["id"] for x in active["data"]] == [first["id"]]
    completed = client.get(
        "/api/v1/stage-claims/my-assignments/completed", headers=_auth(a)
    ).json()
    assert completed["data"] == []


def test_order_validation_and_edits(client, admin, branch):
    a = _register(client, admin)
    body = _order_body(branch)
    body["products"][0]["paper_type"] = "PAPYRUS"
    assert client.post("/api/v1/orders", json=body, headers=_auth(a)).status_code == 422

    body = _order_body(branch)
    body["products"] = []
    assert client.post("/api/v1/orders", json=body, headers=_auth(a)).status_code == 422

    body = _order_body(str(uuid.uuid4()))
    assert client.post("/api/v1/orders", json=body, headers=_auth(a)).status_code == 404

    order = _create_order(client, a, branch)
    resp = client.patch(
        f"/api/v1/orders/{order['id']}/notes", json={"notes": "Rush"}, headers=_auth(a)
    )
    assert resp.json()["data"]["notes"] == "Rush"
    resp = client.patch(
        f"/api/v1/orders/{order['id']}/shipping", json={"shipping_price": 4.5}, headers=_auth(a)
    )
    assert resp.json()["data"]["shipping_price"] == 4.5

    text = client.get(
        f"/api/v1/orders/{order['id']}/confirmation", headers=_auth(a)
    ).json()["data"]["message"]
    assert "Customer: Ada" in text
    assert "TOTAL: $34.50" in text


def test_stage_admin_endpoints(client, admin):
    resp = client.post("/api/v1/admin/stages", json={"stage": "CUT"}, headers=_auth(admin))
    assert resp.status_code == 409
    resp = client.post("/api/v1/admin/stages", json={"stage": "FOLDING"}, headers=_auth(admin))
    assert resp.status_code == 422

    cut_id = _stages(client, admin)["CUT"]
    resp = client.delete(f"/api/v1/admin/stages/{cut_id}", headers=_auth(admin))
    assert resp.status_code == 204
    assert "CUT" not in _stages(client, admin)
    resp = client.delete(f"/api/v1/admin/stages/{cut_id}", headers=_auth(admin))
    assert resp.status_code == 404


def test_overdue_scan_endpoint_returns_nothing_for_new_orders(client, admin, branch):
    _create_order(client, admin, branch)
    resp = client.post("/api/v1/admin/overdue-scan", headers=_auth(admin))
    assert resp.status_code == 200
    assert resp.json()["data"] == []


def test_websocket_receives_notifications_for_user(client, admin, branch):
    creator = _register(client, admin)
    with client.websocket_connect(f"/ws/notifications?token={creator}") as ws:
        order = _create_order(client, creator, branch)
        message = ws.receive_json()

    assert message["userId"] == creator
    assert message["orderId"] == order["id"]
    assert message["type"] == "success"
    assert "created successfully" in message["message"]


def test_websocket_requires_a_known_token(client):
    for url in ("/ws/notifications", f"/ws/notifications?token={uuid.uuid4()}"):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(url) as ws:
                ws.receive_json()


def test_admin_websocket_can_follow_one_user(client, admin, branch):
    creator = _register(client, admin)
    with client.websocket_connect(
        f"/ws/notifications?token={admin}&user_id={creator}"
    ) as ws:
        order = _create_order(client, creator, branch)
        message = ws.receive_json()

    assert message["userId"] == creator
    assert message["orderId"] == order["id"]


def test_creating_users_requires_an_admin(client, admin):
    body = {"phone": "555-6666", "role": "ADMIN"}
    assert client.post("/api/v1/users", json=body).status_code == 401

    staff = _register(client, admin)
    resp = client.post("/api/v1/users", json=body, headers=_auth(staff))
    assert resp.status_code == 403

    resp = client.post("/api/v1/users", json=body, headers=_auth(admin))
    assert resp.status_code == 201
    resp = client.post("/api/v1/users", json=body, headers=_auth(admin))
    assert resp.status_code == 409


def test_user_role_and_stage_management(client, admin):
    staff = _register(client, admin)
    stages = _stages(client, admin)

    resp = client.patch(
        f"/api/v1/users/{staff}/stages",
        json={"stage_ids": [stages["PRINTING"], stages["CUT"]]},
        headers=_auth(admin),
    )
    assert resp.status_code == 200
    assert sorted(resp.json()["data"]["stages"]) == ["CUT", "PRINTING"]

    resp = client.patch(
        f"/api/v1/users/{staff}/stages",
        json={"stage_ids": [stages["CUT"]]},
        headers=_auth(admin),
    )
    assert resp.json()["data"]["stages"] == ["CUT"]

    resp = client.patch(
        f"/api/v1/users/{staff}/stages",
        json={"stage_ids": [str(uuid.uuid4())]},
        headers=_auth(admin),
    )
    assert resp.status_code == 404

    resp = client.patch(
        f"/api/v1/users/{staff}/role", json={"role": "ADMIN"}, headers=_auth(admin)
    )
    assert resp.json()["data"]["role"] == "ADMIN"
    resp = client.get(f"/api/v1/users/{staff}", headers=_auth(admin))
    assert resp.json()["data"]["role"] == "ADMIN"


def test_last_admin_cannot_be_demoted_or_deleted(client, admin):
    resp = client.patch(
        f"/api/v1/users/{admin}/role", json={"role": "STAFF"}, headers=_auth(admin)
    )
    assert resp.status_code == 409
    resp = client.delete(f"/api/v1/users/{admin}", headers=_auth(admin))
    assert resp.status_code == 409


def test_delete_user(client, admin, branch):
    idle = _register(client, admin)
    _assign(client, admin, "WAITING", idle)
    resp = client.delete(f"/api/v1/users/{idle}", headers=_auth(admin))
    assert resp.status_code == 204
    assert client.get(f"/api/v1/users/{idle}", headers=_auth(admin)).status_code == 404
    waiting = client.get("/api/v1/admin/stages", headers=_auth(admin)).json()["data"][0]
    assert idle not in [u["id"] for u in waiting["users"]]

    busy = _register(client, admin)
    _create_order(client, busy, branch)
    resp = client.delete(f"/api/v1/users/{busy}", headers=_auth(admin))
    assert resp.status_code == 409
