import asyncio
import runpy
from pathlib import Path

from edugate.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


def _bootstrap():
    return runpy.run_path(str(SCRIPT), run_name="bootstrap_admin")["bootstrap_admin"]


def test_creates_superadmin_that_can_log_in():
    result = asyncio.run(_bootstrap()("Root@Escola.cat", "password123", "Admin", "Sistema"))

    assert result["status"] == "created"
    runtime = get_runtime()
    user = runtime.store.get_user(result["user_id"])
    assert user.email == "root@escola.cat"
    assert user.role == "SUPERADMIN"
    login = asyncio.run(runtime.auth.login("root@escola.cat", "password123"))
    assert login.user.id == user.id


def test_existing_email_is_left_alone():
    bootstrap = _bootstrap()
    first = asyncio.run(bootstrap("root@escola.cat", "password123", "Admin", "Sistema"))

    second = asyncio.run(bootstrap("root@escola.cat", "other-pass-1", "Admin", "Sistema"))

    assert second == {"user_id": first["user_id"], "email": "root@escola.cat", "status": "exists"}


def test_dry_run_writes_nothing():
    result = asyncio.run(
        _bootstrap()("root@escola.cat", "password123", "Admin", "Sistema", dry_run=True)
    )

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("root@escola.cat") is None
