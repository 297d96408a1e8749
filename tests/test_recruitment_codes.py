from __future__ import annotations

import re
from collections.abc import Generator
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from orgcore import main as app_main
from orgcore.domain.errors import CodeSpaceExhausted, DuplicateActiveCode
from orgcore.domain.models import CodeType, Role, now_utc
from orgcore.infra import audit, db, events
from orgcore.infra.auth import create_access_token
from orgcore.services import recruitment_code_service
from orgcore.services.recruitment_code_service import RecruitmentCodeService

CODE_FORMAT = re.compile(r"^[A-Z]{2}-[A-Z]{3}-[A-Z0-9]{6}$")


@pytest.fixture()
def codes_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    test_engine = db.make_engine(f"sqlite:///{tmp_path / 'codes_test.db'}")
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


def _bootstrap(client: TestClient) -> dict[str, Any]:
    response = client.post("/api/hierarchy/bootstrap-admin", json={"display_name": "root admin"})
    assert response.status_code == 201
    return response.json()["user"]


def _generate(client: TestClient, owner: dict[str, Any], code_type: str) -> dict[str, Any]:
    response = client.post(
        "/api/reference-codes/generate",
        json={"code_type": code_type},
        headers=_headers(owner),
    )
    assert response.status_code == 201
    return response.json()[0]


def _validate(client: TestClient, code: str) -> dict[str, Any]:
    response = client.post("/api/reference-codes/validate", json={"code": code})
    assert response.status_code == 200
    return response.json()


def _register(client: TestClient, code: str, name: str) -> dict[str, Any]:
    response = client.post("/api/hierarchy/register", json={"display_name": name, "reference_code": code})
    assert response.status_code == 201
    return response.json()["user"]


def test_generated_code_format_and_public_validation(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    code = _generate(codes_client, admin, "delegate")

    assert CODE_FORMAT.match(code["code"])
    assert code["code"].startswith("TA-DLG-")
    assert code["owner_id"] == admin["id"]
    assert code["is_active"] is True

    result = _validate(codes_client, code["code"].lower())
    assert result["is_valid"] is True
    assert result["reason"] is None
    assert result["code_type"] == "delegate"
    assert result["owner_name"] == "root admin"
    assert result["owner_role"] == "top_admin"


def test_validation_reasons_for_unusable_codes(codes_client: TestClient) -> None:
    malformed = _validate(codes_client, "not-a-code")
    assert malformed["is_valid"] is False
    assert malformed["reason"] == "malformed"

    missing = _validate(codes_client, "TA-DLG-000000")
    assert missing["is_valid"] is False
    assert missing["reason"] == "not_found"
    assert missing["owner_name"] is None


def test_deactivate_hides_owner_and_reactivate_restores(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    code = _generate(codes_client, admin, "client")

    deactivated = codes_client.patch(f"/api/reference-codes/{code['id']}/deactivate", headers=_headers(admin))
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False

    inactive = _validate(codes_client, code["code"])
    assert inactive == {
        "is_valid": False,
        "reason": "inactive",
        "code_type": None,
        "owner_name": None,
        "owner_role": None,
        "message": "code is no longer active",
    }

    rejected = codes_client.post(
        "/api/hierarchy/register",
        json={"display_name": "late client", "reference_code": code["code"]},
    )
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["code"] == "REFERENCE_CODE_INVALID"

    reactivated = codes_client.patch(f"/api/reference-codes/{code['id']}/reactivate", headers=_headers(admin))
    assert reactivated.status_code == 200
    body = reactivated.json()
    assert body["code"] == code["code"]
    assert body["code_type"] == code["code_type"]
    assert body["owner_id"] == code["owner_id"]
    assert body["is_active"] is True
    assert _validate(codes_client, code["code"])["is_valid"] is True


def test_regenerate_invalidates_old_code_and_keeps_type_and_owner(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    code = _generate(codes_client, admin, "senior_fulfiller")

    response = codes_client.post(f"/api/reference-codes/{code['id']}/regenerate", headers=_headers(admin))
    assert response.status_code == 201
    replacement = response.json()
    assert replacement["id"] != code["id"]
    assert replacement["code"] != code["code"]
    assert CODE_FORMAT.match(replacement["code"])

    old_result = _validate(codes_client, code["code"])
    new_result = RecruitmentCodeService().validate(replacement["code"])
    assert old_result["is_valid"] is False
    assert new_result.is_valid is True
    assert new_result.code_type == CodeType.SENIOR_FULFILLER
    assert new_result.owner_id == admin["id"]


def test_duplicate_and_bulk_generation_conflicts(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    _generate(codes_client, admin, "delegate")

    duplicate = codes_client.post(
        "/api/reference-codes/generate",
        json={"code_type": "delegate"},
        headers=_headers(admin),
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["code"] == "REFERENCE_CODE_DUPLICATE_ACTIVE"

    bulk = codes_client.post("/api/reference-codes/generate", json={}, headers=_headers(admin))
    assert bulk.status_code == 409
    assert bulk.json()["detail"]["code"] == "REFERENCE_CODES_ALREADY_EXIST"


def test_bulk_generation_issues_one_code_per_recruitable_type(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    response = codes_client.post("/api/reference-codes/generate", json={}, headers=_headers(admin))
    assert response.status_code == 201
    assert sorted(item["code_type"] for item in response.json()) == ["client", "delegate", "senior_fulfiller"]

    senior = _register(codes_client, next(item["code"] for item in response.json() if item["code_type"] == "senior_fulfiller"), "S")
    senior_codes = codes_client.post("/api/reference-codes/generate", json={}, headers=_headers(senior))
    assert senior_codes.status_code == 201
    assert [item["code_type"] for item in senior_codes.json()] == ["fulfiller"]
    assert senior_codes.json()[0]["code"].startswith("SF-FUL-")


def test_owner_cannot_issue_types_it_cannot_parent(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    response = codes_client.post(
        "/api/reference-codes/generate",
        json={"code_type": "fulfiller"},
        headers=_headers(admin),
    )
    assert response.status_code == 403

    senior = _register(codes_client, _generate(codes_client, admin, "senior_fulfiller")["code"], "S")
    fulfiller = _register(codes_client, _generate(codes_client, senior, "fulfiller")["code"], "F")
    denied = codes_client.post("/api/reference-codes/generate", json={}, headers=_headers(fulfiller))
    assert denied.status_code == 403


def test_codes_owned_by_others_look_missing(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    code = _generate(codes_client, admin, "delegate")
    delegate = _register(codes_client, code["code"], "B")

    response = codes_client.patch(f"/api/reference-codes/{code['id']}/deactivate", headers=_headers(delegate))
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "REFERENCE_CODE_NOT_FOUND"
    assert _validate(codes_client, code["code"])["is_valid"] is True


def test_usage_stats_and_recruited_users_pagination(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    code = _generate(codes_client, admin, "client")
    first = _register(codes_client, code["code"], "client one")
    second = _register(codes_client, code["code"], "client two")

    stats = codes_client.get(f"/api/reference-codes/{code['id']}/stats", headers=_headers(admin))
    assert stats.status_code == 200
    assert stats.json()["total_uses"] == 2
    assert stats.json()["recent_uses"] == 2
    assert stats.json()["last_used_at"] is not None

    page = codes_client.get(
        f"/api/reference-codes/{code['id']}/recruited-users",
        params={"page": 1, "limit": 1},
        headers=_headers(admin),
    )
    assert page.status_code == 200
    body = page.json()
    assert body["total"] == 2
    assert body["total_pages"] == 2
    assert len(body["items"]) == 1
    assert body["items"][0]["id"] in {first["id"], second["id"]}
    assert body["items"][0]["reference_code_used"] == code["code"]

    mine = codes_client.get("/api/reference-codes/mine", headers=_headers(admin))
    assert mine.status_code == 200
    assert len(mine.json()) == 1
    assert mine.json()[0]["usage"]["total_uses"] == 2


def test_generation_gives_up_after_repeated_collisions(
    codes_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    admin = _bootstrap(codes_client)
    second_root = codes_client.post(
        "/api/hierarchy/top-admins",
        json={"display_name": "second root"},
        headers=_headers(admin),
    ).json()["user"]
    monkeypatch.setattr(recruitment_code_service, "_random_suffix", lambda: "AAAAAA")

    first = RecruitmentCodeService().generate(admin["id"], CodeType.DELEGATE)
    assert first.code == "TA-DLG-AAAAAA"
    with pytest.raises(CodeSpaceExhausted):
        RecruitmentCodeService().generate(second_root["id"], CodeType.DELEGATE)


def test_regenerate_keeps_expiry(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    expires_at = now_utc() + timedelta(days=1)
    service = RecruitmentCodeService()
    original = service.generate(admin["id"], CodeType.CLIENT, expires_at=expires_at)

    replacement = service.regenerate(original.id, admin["id"])

    assert replacement.expires_at is not None
    assert abs(recruitment_code_service._as_utc(replacement.expires_at) - expires_at) < timedelta(seconds=1)
    assert service.validate(replacement.code).is_valid is True


def test_expired_code_fails_validation_and_registration(codes_client: TestClient) -> None:
    admin = _bootstrap(codes_client)
    code = RecruitmentCodeService().generate(
        admin["id"],
        CodeType.CLIENT,
        expires_at=now_utc() - timedelta(minutes=1),
    )

    result = _validate(codes_client, code.code)
    assert result["is_valid"] is False
    assert result["reason"] == "expired"
    assert result["owner_name"] is None
    assert result["message"] == "code has expired"

    rejected = codes_client.post(
        "/api/hierarchy/register",
        json={"display_name": "late client", "reference_code": code.code},
    )
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["code"] == "REFERENCE_CODE_INVALID"


def test_racing_generation_reports_duplicate_active_code(
    codes_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    admin = _bootstrap(codes_client)
    service = RecruitmentCodeService()
    service.generate(admin["id"], CodeType.DELEGATE)
    # Both requests passed the existence check before either committed.
    monkeypatch.setattr(RecruitmentCodeService, "_active_code_for", lambda self, session, owner_id, code_type: None)

    with pytest.raises(DuplicateActiveCode):
        service.generate(admin["id"], CodeType.DELEGATE)
