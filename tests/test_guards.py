"""Role and tenant-scope guards attached to routes as dependencies."""

import asyncio

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from edugate.api.deps import (
    audit_mutation,
    require_admin_curs,
    require_centre_access,
    require_curs_access,
    require_superadmin,
    require_user_access,
)
from edugate.api.error_handling import register_exception_handlers
from edugate.service.runtime import get_runtime

PASSWORD = "secret123"


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/centres/{centreId}", dependencies=[Depends(require_centre_access())])
    async def read_centre(centreId: str):
        return {"centreId": centreId}

    @app.post("/cursos", dependencies=[Depends(require_curs_access())])
    async def touch_curs(request: Request):
        return await request.json()

    @app.get("/users/{userId}", dependencies=[Depends(require_user_access())])
    async def read_user(userId: str):
        return {"userId": userId}

    @app.get("/admin", dependencies=[Depends(require_superadmin)])
    async def admin_only():
        return {"ok": True}

    @app.post(
        "/centres/{centreId}/items",
        dependencies=[
            Depends(require_admin_curs),
            Depends(require_centre_access()),
            Depends(audit_mutation),
        ],
    )
    async def create_item(centreId: str, request: Request):
        return await request.json()

    return app


@pytest.fixture
def client():
    return TestClient(_build_app())


def _token_for(email, role, **scope):
    runtime = get_runtime()
    user = runtime.store.create_user(email, "Anna", "Puig", role=role, **scope)
    pwd_hash, algo = runtime.auth.hash_password(PASSWORD)
    runtime.store.save_password(user.id, pwd_hash, algo)
    result = asyncio.run(runtime.auth.login(email, PASSWORD))
    return user, {"Authorization": f"Bearer {result.access_token}"}


def _denials(user_id):
    return get_runtime().store.list_activity(user_id=user_id, action="ACCESS_DENIED")


def test_missing_token_is_401_not_403(client):
    response = client.get("/centres/c-1")

    assert response.status_code == 401


class TestCentreAccess:
    def test_superadmin_reaches_any_centre(self, client):
        _, headers = _token_for("root@b.com", "SUPERADMIN")

        assert client.get("/centres/c-9", headers=headers).status_code == 200

    def test_centre_admin_is_bound_to_own_centre(self, client):
        user, headers = _token_for("centre@b.com", "ADMIN_CENTRE", centre_id="c-1")

        assert client.get("/centres/c-1", headers=headers).status_code == 200
        denied = client.get("/centres/c-2", headers=headers)

        assert denied.status_code == 403
        assert denied.json()["message"] == "Accés denegat al centre especificat"
        entries = _denials(user.id)
        assert len(entries) == 1
        assert entries[0].table_name == "centres"
        assert entries[0].new_data == {"reason": "centre"}

    def test_caller_without_centre_is_denied(self, client):
        _, headers = _token_for("curs@b.com", "ADMIN_CURS", curs_id="k-1")

        assert client.get("/centres/c-1", headers=headers).status_code == 403


class TestCursAccess:
    def test_scope_is_read_from_body(self, client):
        _, headers = _token_for("curs@b.com", "ADMIN_CURS", curs_id="k-1")

        allowed = client.post("/cursos", json={"cursId": "k-1"}, headers=headers)
        denied = client.post("/cursos", json={"cursId": "k-2"}, headers=headers)

        assert allowed.status_code == 200
        assert allowed.json() == {"cursId": "k-1"}
        assert denied.status_code == 403
        assert denied.json()["message"] == "Accés denegat al curs especificat"

    def test_centre_admin_reaches_any_curs(self, client):
        _, headers = _token_for("centre@b.com", "ADMIN_CENTRE", centre_id="c-1")

        response = client.post("/cursos", json={"cursId": "k-7"}, headers=headers)

        assert response.status_code == 200


class TestUserAccess:
    def test_self_access_only_for_non_superadmins(self, client):
        user, headers = _token_for("curs@b.com", "ADMIN_CURS", curs_id="k-1")

        assert client.get(f"/users/{user.id}", headers=headers).status_code == 200
        denied = client.get("/users/someone-else", headers=headers)
        assert denied.status_code == 403
        assert denied.json()["message"] == "Accés denegat a l'usuari especificat"

    def test_superadmin_reaches_any_user(self, client):
        _, headers = _token_for("root@b.com", "SUPERADMIN")

        assert client.get("/users/someone-else", headers=headers).status_code == 200


class TestRoleGate:
    @pytest.mark.parametrize("role", ["ADMIN_CENTRE", "ADMIN_CURS"])
    def test_only_superadmin(self, client, role):
        user, headers = _token_for("x@b.com", role, centre_id="c-1")

        response = client.get("/admin", headers=headers)

        assert response.status_code == 403
        assert response.json()["message"] == "Accés denegat. Permisos insuficients."
        assert _denials(user.id)[0].new_data == {"reason": "role"}


class TestAuditMutation:
    def test_write_is_attributed_to_path_target(self, client):
        user, headers = _token_for("centre@b.com", "ADMIN_CENTRE", centre_id="c-1")

        response = client.post(
            "/centres/c-1/items",
            json={"name": "Pissarra", "password": "never-logged"},
            headers={**headers, "User-Agent": "pytest"},
        )

        assert response.status_code == 200
        entries = get_runtime().store.list_activity(user_id=user.id, action="CREATE")
        assert len(entries) == 1
        assert entries[0].table_name == "centres"
        assert entries[0].record_id == "c-1"
        assert entries[0].new_data == {"name": "Pissarra"}
        assert entries[0].user_agent == "pytest"

    def test_denied_write_is_not_recorded_as_mutation(self, client):
        user, headers = _token_for("centre@b.com", "ADMIN_CENTRE", centre_id="c-1")

        response = client.post("/centres/c-2/items", json={"name": "x"}, headers=headers)

        assert response.status_code == 403
        assert get_runtime().store.list_activity(user_id=user.id, action="CREATE") == []
        assert len(_denials(user.id)) == 1
