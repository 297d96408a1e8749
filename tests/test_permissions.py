from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, col, select

from orgcore import main as app_main
from orgcore.domain.models import FinancialAccessAudit, Role
from orgcore.infra import audit, db, events
from orgcore.infra.auth import create_access_token
from orgcore.services.permission_service import PermissionService


@pytest.fixture()
def permissions_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    test_engine = db.make_engine(f"sqlite:///{tmp_path / 'permissions_test.db'}")
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _headers(user: dict[str, Any]) -> dict[str, str]:
    token = create_access_token(user_id=user["id"], role=Role(user["role"]))
    return {"Authorization": f"Bearer {token}"}


def _active_code(client: TestClient, owner: dict[str, Any], code_type: str) -> str:
    mine = client.get("/api/reference-codes/mine", headers=_headers(owner))
    assert mine.status_code == 200
    for item in mine.json():
        if item["code_type"] == code_type and item["is_active"]:
            return item["code"]
    generated = client.post(
        "/api/reference-codes/generate",
        json={"code_type": code_type},
        headers=_headers(owner),
    )
    assert generated.status_code == 201
    return generated.json()[0]["code"]


def _recruit(client: TestClient, owner: dict[str, Any], code_type: str, name: str) -> dict[str, Any]:
    response = client.post(
        "/api/hierarchy/register",
        json={"display_name": name, "reference_code": _active_code(client, owner, code_type)},
    )
    assert response.status_code == 201
    return response.json()["user"]


def _network(client: TestClient) -> dict[str, dict[str, Any]]:
    response = client.post("/api/hierarchy/bootstrap-admin", json={"display_name": "A"})
    assert response.status_code == 201
    admin = response.json()["user"]
    delegate = _recruit(client, admin, "delegate", "D")
    senior = _recruit(client, delegate, "senior_fulfiller", "S")
    return {
        "admin": admin,
        "delegate": delegate,
        "senior": senior,
        "fulfiller": _recruit(client, senior, "fulfiller", "F"),
        "client": _recruit(client, delegate, "client", "C"),
    }


def _record(users: dict[str, dict[str, Any]]) -> dict[str, Any]:
    return {
        "id": "wi-1",
        "title": "site survey",
        "client_id": users["client"]["id"],
        "delegate_id": users["delegate"]["id"],
        "total_cost": 1000,
        "delegate_fee": 100,
        "fulfiller_payment": 600,
        "profit_margin": 300,
        "pricing_breakdown": {"base": 900, "rush": 100},
        "system_profit": 200,
        "top_admin_share": 100,
        "payment_status": "pending",
    }


def _filter(client: TestClient, caller: dict[str, Any], record: dict[str, Any]) -> dict[str, Any]:
    response = client.post(
        "/api/permissions/financial/filter",
        json={"resource_type": "work_item", "records": [record]},
        headers=_headers(caller),
    )
    assert response.status_code == 200
    return response.json()["records"][0]


def _audit_entries(caller_id: str) -> list[FinancialAccessAudit]:
    with Session(db.get_engine()) as session:
        statement = (
            select(FinancialAccessAudit)
            .where(FinancialAccessAudit.caller_id == caller_id)
            .order_by(col(FinancialAccessAudit.created_at).asc())
        )
        return list(session.exec(statement).all())


def test_fulfiller_filter_strips_profit_and_audits_success(permissions_client: TestClient) -> None:
    users = _network(permissions_client)
    filtered = _filter(permissions_client, users["fulfiller"], _record(users))

    assert "profit_margin" not in filtered
    assert "system_profit" not in filtered
    assert "total_cost" not in filtered
    assert filtered["title"] == "site survey"
    assert filtered["id"] == "wi-1"

    entries = _audit_entries(users["fulfiller"]["id"])
    assert len(entries) == 1
    assert entries[0].success is True
    assert entries[0].caller_role == Role.FULFILLER
    assert entries[0].resource_id == "wi-1"
    assert entries[0].access_type == "filter"


def test_financial_visibility_per_role(permissions_client: TestClient) -> None:
    users = _network(permissions_client)
    record = _record(users)

    top = _filter(permissions_client, users["admin"], record)
    assert top == record

    delegate_own = _filter(permissions_client, users["delegate"], record)
    assert delegate_own["delegate_fee"] == 100
    assert "system_profit" not in delegate_own
    assert "top_admin_share" not in delegate_own

    delegate_other = _filter(permissions_client, users["delegate"], {**record, "delegate_id": "someone-else"})
    assert "total_cost" not in delegate_other
    assert "pricing_breakdown" not in delegate_other

    senior = _filter(permissions_client, users["senior"], record)
    assert senior["fulfiller_payment"] == 600
    assert "delegate_fee" not in senior
    assert "profit_margin" not in senior

    client_own = _filter(permissions_client, users["client"], record)
    assert client_own["total_cost"] == 1000
    assert "delegate_fee" not in client_own
    assert "fulfiller_payment" not in client_own

    client_other = _filter(permissions_client, users["client"], {**record, "client_id": "someone-else"})
    assert "total_cost" not in client_other
    assert client_other["payment_status"] == "pending"


def test_batch_filter_writes_one_audit_entry(permissions_client: TestClient) -> None:
    users = _network(permissions_client)
    response = permissions_client.post(
        "/api/permissions/financial/filter",
        json={"records": [_record(users), {**_record(users), "id": "wi-2"}]},
        headers=_headers(users["senior"]),
    )
    assert response.status_code == 200
    assert len(response.json()["records"]) == 2

    entries = _audit_entries(users["senior"]["id"])
    assert [item.access_type for item in entries] == ["filter_batch"]


def test_financial_audit_restricted_to_top_admin(permissions_client: TestClient) -> None:
    users = _network(permissions_client)

    denied = permissions_client.get("/api/permissions/financial/audit", headers=_headers(users["delegate"]))
    assert denied.status_code == 403
    assert denied.json()["detail"]["code"] == "FINANCIAL_ACCESS_DENIED"
    failures = _audit_entries(users["delegate"]["id"])
    assert [item.success for item in failures] == [False]

    allowed = permissions_client.get("/api/permissions/financial/audit", headers=_headers(users["admin"]))
    assert allowed.status_code == 200
    access_types = {item["access_type"] for item in allowed.json()}
    assert "audit_read" in access_types


def test_financial_permission_check(permissions_client: TestClient) -> None:
    users = _network(permissions_client)

    allowed = permissions_client.get(
        "/api/permissions/financial/check",
        params={"permission": "view_fulfiller_payments"},
        headers=_headers(users["senior"]),
    )
    assert allowed.status_code == 200
    assert allowed.json()["allowed"] is True

    denied = permissions_client.get(
        "/api/permissions/financial/check",
        params={"permission": "view_profit_data"},
        headers=_headers(users["senior"]),
    )
    assert denied.status_code == 403
    assert [item.success for item in _audit_entries(users["senior"]["id"])] == [True, False]


def test_permission_summary(permissions_client: TestClient) -> None:
    users = _network(permissions_client)
    response = permissions_client.get("/api/permissions/me", headers=_headers(users["fulfiller"]))
    assert response.status_code == 200
    body = response.json()
    assert body["role"] == "fulfiller"
    assert body["capabilities"] == ["view_assigned_projects", "view_hierarchy"]
    assert not any(body["financial"].values())


def test_can_access_work_items_and_unknown_types(permissions_client: TestClient) -> None:
    users = _network(permissions_client)
    created = permissions_client.post(
        "/api/assignments/work-items",
        json={"title": "survey", "client_id": users["client"]["id"]},
        headers=_headers(users["client"]),
    )
    assert created.status_code == 201
    work_item_id = created.json()["id"]

    service = PermissionService()
    assert service.can_access_project(users["client"]["id"], Role.CLIENT, work_item_id) is True
    assert service.can_access_project(users["delegate"]["id"], Role.DELEGATE_ADMIN, work_item_id) is True
    assert service.can_access_project(users["senior"]["id"], Role.SENIOR_FULFILLER, work_item_id) is False
    assert service.can_access_project(users["admin"]["id"], Role.TOP_ADMIN, "missing") is False

    unknown = permissions_client.get(
        "/api/permissions/can-access",
        params={"resource_type": "invoice", "resource_id": work_item_id},
        headers=_headers(users["admin"]),
    )
    assert unknown.status_code == 400
    assert unknown.json()["detail"]["code"] == "VALIDATION_ERROR"

    alias = permissions_client.get(
        "/api/permissions/can-access",
        params={"resource_type": "project", "resource_id": work_item_id},
        headers=_headers(users["admin"]),
    )
    assert alias.json()["allowed"] is True
