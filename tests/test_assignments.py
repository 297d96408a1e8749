from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from orgcore import main as app_main
from orgcore.domain.errors import InvalidRoleAssignment
from orgcore.domain.models import (
    AssignmentRecord,
    AssignmentType,
    EventRecord,
    Role,
    WorkItem,
)
from orgcore.infra import audit, db, events
from orgcore.infra.auth import create_access_token
from orgcore.services.assignment_service import AssignmentService


@pytest.fixture()
def assignment_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    test_engine = db.make_engine(f"sqlite:///{tmp_path / 'assignment_test.db'}")
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
    other_delegate = _recruit(client, admin, "delegate", "D2")
    senior = _recruit(client, delegate, "senior_fulfiller", "S")
    foreign_senior = _recruit(client, other_delegate, "senior_fulfiller", "S2")
    return {
        "admin": admin,
        "delegate": delegate,
        "other_delegate": other_delegate,
        "senior": senior,
        "foreign_senior": foreign_senior,
        "fulfiller": _recruit(client, senior, "fulfiller", "F1"),
        "other_fulfiller": _recruit(client, senior, "fulfiller", "F2"),
        "client": _recruit(client, admin, "client", "C"),
    }


def _work_item(client: TestClient, users: dict[str, dict[str, Any]]) -> str:
    response = client.post(
        "/api/assignments/work-items",
        json={"title": "site survey", "client_id": users["client"]["id"]},
        headers=_headers(users["admin"]),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _assign(
    client: TestClient,
    caller: dict[str, Any],
    work_item_id: str,
    assignee: dict[str, Any],
    assignment_type: str = "initial",
) -> Any:
    return client.post(
        "/api/assignments/assign",
        json={
            "work_item_id": work_item_id,
            "assigned_to_id": assignee["id"],
            "assignment_type": assignment_type,
            "notes": "please handle",
        },
        headers=_headers(caller),
    )


def _valid_records(work_item_id: str) -> list[AssignmentRecord]:
    with Session(db.get_engine()) as session:
        statement = (
            select(AssignmentRecord)
            .where(AssignmentRecord.work_item_id == work_item_id)
            .where(col(AssignmentRecord.is_valid).is_(True))
        )
        return list(session.exec(statement).all())


def test_assignment_chain_keeps_one_current_record(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    work_item_id = _work_item(assignment_client, users)

    first = _assign(assignment_client, users["admin"], work_item_id, users["delegate"])
    assert first.status_code == 201
    assert first.json()["assigned_to_role"] == "delegate_admin"
    assert first.json()["hierarchy_level"] == 2

    second = _assign(assignment_client, users["delegate"], work_item_id, users["senior"], "reassignment")
    assert second.status_code == 201
    assert second.json()["previous_assigned_to_id"] == users["delegate"]["id"]

    third = _assign(assignment_client, users["senior"], work_item_id, users["fulfiller"], "reassignment")
    assert third.status_code == 201

    current = _valid_records(work_item_id)
    assert len(current) == 1
    assert current[0].assigned_to_id == users["fulfiller"]["id"]

    history = assignment_client.get(
        f"/api/assignments/work-items/{work_item_id}/history",
        headers=_headers(users["admin"]),
    )
    assert history.status_code == 200
    records = history.json()
    assert [item["assigned_to_id"] for item in records] == [
        users["delegate"]["id"],
        users["senior"]["id"],
        users["fulfiller"]["id"],
    ]
    assert [item["is_valid"] for item in records] == [False, False, True]
    assert all(item["superseded_at"] is not None for item in records[:2])

    with Session(db.get_engine()) as session:
        work_item = session.get(WorkItem, work_item_id)
        assert work_item is not None
        assert work_item.version == 4
        notifications = session.exec(select(EventRecord).where(EventRecord.event_type == "assignment.created")).all()
    assert len(notifications) == 3


def test_fulfiller_to_fulfiller_is_invalid_role_assignment(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    work_item_id = _work_item(assignment_client, users)

    with pytest.raises(InvalidRoleAssignment):
        AssignmentService().assign(
            work_item_id,
            users["other_fulfiller"]["id"],
            users["fulfiller"]["id"],
            Role.FULFILLER,
        )

    blocked = _assign(assignment_client, users["fulfiller"], work_item_id, users["other_fulfiller"])
    assert blocked.status_code == 403
    assert _valid_records(work_item_id) == []


def test_role_pair_and_network_violations(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    work_item_id = _work_item(assignment_client, users)
    assert _assign(assignment_client, users["admin"], work_item_id, users["delegate"]).status_code == 201

    skip_level = _assign(assignment_client, users["delegate"], work_item_id, users["fulfiller"], "reassignment")
    assert skip_level.status_code == 409
    assert skip_level.json()["detail"]["code"] == "ASSIGNMENT_INVALID_ROLE"

    foreign = _assign(assignment_client, users["delegate"], work_item_id, users["foreign_senior"], "reassignment")
    assert foreign.status_code == 409
    assert foreign.json()["detail"]["code"] == "ASSIGNMENT_NOT_IN_HIERARCHY"

    assert len(_valid_records(work_item_id)) == 1


def test_assignment_state_rules(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    work_item_id = _work_item(assignment_client, users)

    missing_current = _assign(assignment_client, users["admin"], work_item_id, users["delegate"], "reassignment")
    assert missing_current.status_code == 409
    assert missing_current.json()["detail"]["code"] == "ASSIGNMENT_STATE_CONFLICT"

    assert _assign(assignment_client, users["admin"], work_item_id, users["delegate"]).status_code == 201

    second_initial = _assign(assignment_client, users["admin"], work_item_id, users["senior"])
    assert second_initial.status_code == 409
    assert second_initial.json()["detail"]["code"] == "ASSIGNMENT_STATE_CONFLICT"

    same_assignee = _assign(assignment_client, users["admin"], work_item_id, users["delegate"], "reassignment")
    assert same_assignee.status_code == 409

    unknown = _assign(assignment_client, users["admin"], "missing-work-item", users["delegate"])
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["code"] == "ASSIGNMENT_WORK_ITEM_NOT_FOUND"


def test_unrelated_callers_cannot_touch_work_item(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    work_item_id = _work_item(assignment_client, users)

    response = _assign(assignment_client, users["other_delegate"], work_item_id, users["foreign_senior"])
    assert response.status_code == 404

    history = assignment_client.get(
        f"/api/assignments/work-items/{work_item_id}/history",
        headers=_headers(users["other_fulfiller"]),
    )
    assert history.status_code == 404

    own = assignment_client.get(
        f"/api/assignments/work-items/{work_item_id}/history",
        headers=_headers(users["client"]),
    )
    assert own.status_code == 200
    assert own.json() == []


def test_check_and_available_assignees(assignment_client: TestClient) -> None:
    users = _network(assignment_client)

    ok = assignment_client.post(
        "/api/assignments/check",
        json={"assigned_to_id": users["fulfiller"]["id"]},
        headers=_headers(users["senior"]),
    )
    assert ok.status_code == 200
    assert ok.json() == {"is_valid": True, "message": "assignment is allowed"}

    rejected = assignment_client.post(
        "/api/assignments/check",
        json={"assigned_to_id": users["fulfiller"]["id"]},
        headers=_headers(users["delegate"]),
    )
    assert rejected.status_code == 200
    assert rejected.json()["is_valid"] is False

    senior_options = assignment_client.get("/api/assignments/available-assignees", headers=_headers(users["senior"]))
    assert senior_options.status_code == 200
    assert {item["id"] for item in senior_options.json()} == {
        users["fulfiller"]["id"],
        users["other_fulfiller"]["id"],
    }

    delegate_options = assignment_client.get(
        "/api/assignments/available-assignees",
        headers=_headers(users["delegate"]),
    )
    assert [item["id"] for item in delegate_options.json()] == [users["senior"]["id"]]

    admin_options = assignment_client.get("/api/assignments/available-assignees", headers=_headers(users["admin"]))
    assert {item["role"] for item in admin_options.json()} == {"delegate_admin", "senior_fulfiller", "fulfiller"}


def test_current_assignment_unique_index_enforced_in_db(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    work_item_id = _work_item(assignment_client, users)
    assert _assign(assignment_client, users["admin"], work_item_id, users["delegate"]).status_code == 201

    with Session(db.get_engine()) as session:
        session.add(
            AssignmentRecord(
                work_item_id=work_item_id,
                assigned_to_id=users["other_delegate"]["id"],
                assigned_to_role=Role.DELEGATE_ADMIN,
                assigned_by_id=users["admin"]["id"],
                assigned_by_role=Role.TOP_ADMIN,
                assignment_type=AssignmentType.INITIAL,
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()


def test_client_creates_only_own_work_items(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    other_client = _recruit(assignment_client, users["delegate"], "client", "C2")

    own = assignment_client.post(
        "/api/assignments/work-items",
        json={"title": "my request", "client_id": users["client"]["id"]},
        headers=_headers(users["client"]),
    )
    assert own.status_code == 201
    assert own.json()["created_by"] == users["client"]["id"]

    foreign = assignment_client.post(
        "/api/assignments/work-items",
        json={"title": "not mine", "client_id": other_client["id"]},
        headers=_headers(users["client"]),
    )
    assert foreign.status_code == 403


def test_bulk_assign_reports_each_item_and_summary(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    first = _work_item(assignment_client, users)
    second = _work_item(assignment_client, users)

    response = assignment_client.post(
        "/api/assignments/bulk-assign",
        json={
            "items": [
                {"work_item_id": first, "assigned_to_id": users["delegate"]["id"]},
                {"work_item_id": second, "assigned_to_id": users["fulfiller"]["id"]},
                {"work_item_id": "missing-work-item", "assigned_to_id": users["delegate"]["id"]},
            ]
        },
        headers=_headers(users["admin"]),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["summary"] == {"total": 3, "successful": 2, "failed": 1}
    assert [item["success"] for item in body["results"]] == [True, True, False]
    assert body["results"][0]["assignment"]["assigned_to_id"] == users["delegate"]["id"]
    assert body["results"][2]["error_code"] == "ASSIGNMENT_WORK_ITEM_NOT_FOUND"
    assert len(_valid_records(first)) == 1
    assert len(_valid_records(second)) == 1


def test_bulk_assign_hides_items_outside_callers_network(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    work_item_id = _work_item(assignment_client, users)

    response = assignment_client.post(
        "/api/assignments/bulk-assign",
        json={"items": [{"work_item_id": work_item_id, "assigned_to_id": users["foreign_senior"]["id"]}]},
        headers=_headers(users["other_delegate"]),
    )
    assert response.status_code == 200
    assert response.json()["summary"] == {"total": 1, "successful": 0, "failed": 1}
    assert response.json()["results"][0]["error_code"] == "ASSIGNMENT_WORK_ITEM_NOT_FOUND"
    assert _valid_records(work_item_id) == []

    empty = assignment_client.post(
        "/api/assignments/bulk-assign",
        json={"items": []},
        headers=_headers(users["admin"]),
    )
    assert empty.status_code == 422


def test_assignment_statistics_follow_callers_network(assignment_client: TestClient) -> None:
    users = _network(assignment_client)
    first = _work_item(assignment_client, users)
    second = _work_item(assignment_client, users)
    _work_item(assignment_client, users)
    assert _assign(assignment_client, users["admin"], first, users["delegate"]).status_code == 201
    assert _assign(assignment_client, users["delegate"], first, users["senior"], "reassignment").status_code == 201
    assert _assign(assignment_client, users["admin"], second, users["other_delegate"]).status_code == 201

    admin_stats = assignment_client.get("/api/assignments/statistics", headers=_headers(users["admin"]))
    assert admin_stats.status_code == 200
    assert admin_stats.json() == {
        "total_work_items": 3,
        "assigned_work_items": 2,
        "unassigned_work_items": 1,
        "reassignments": 1,
        "distinct_assignees": 2,
        "by_assignee_role": {"senior_fulfiller": 1, "delegate_admin": 1},
    }

    delegate_stats = assignment_client.get("/api/assignments/statistics", headers=_headers(users["delegate"]))
    assert delegate_stats.status_code == 200
    assert delegate_stats.json()["total_work_items"] == 1
    assert delegate_stats.json()["assigned_work_items"] == 1
    assert delegate_stats.json()["by_assignee_role"] == {"senior_fulfiller": 1}

    fulfiller_stats = assignment_client.get("/api/assignments/statistics", headers=_headers(users["fulfiller"]))
    assert fulfiller_stats.status_code == 200
    assert fulfiller_stats.json()["total_work_items"] == 0
