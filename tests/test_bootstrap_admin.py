import importlib.util
from pathlib import Path

import pytest

from teachgram.service.runtime import get_runtime
from teachgram.storage.models import ROLE_ADMIN, ROLE_USER

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_validate_admin(bootstrap):
    assert bootstrap.validate_admin("admin", "admin@example.com", "long-enough-pw") == []
    assert bootstrap.validate_admin("admin", "admin@example.com", "short-pw")
    problems = bootstrap.validate_admin("a", "not-an-email", "long-enough-pw")
    assert any(p.startswith("username") for p in problems)
    assert any(p.startswith("email") for p in problems)


async def test_creates_admin(bootstrap):
    result = await bootstrap.bootstrap_admin("admin", "admin@example.com", "long-enough-pw")

    assert result["status"] == "created"
    account = get_runtime().store.find_by_id(result["user_id"])
    assert account.roles == {ROLE_USER, ROLE_ADMIN}
    assert get_runtime().tokens.validate(result["token"], "admin")


async def test_promotes_then_reports_admin(bootstrap):
    await bootstrap.bootstrap_admin("joe", "joe@example.com", "long-enough-pw")
    store = get_runtime().store
    account = store.find_by_username("joe")
    account.roles = {ROLE_USER}
    store.save(account)

    promoted = await bootstrap.bootstrap_admin("joe", "joe@example.com", "ignored-password")
    again = await bootstrap.bootstrap_admin("joe", "joe@example.com", "ignored-password")

    assert promoted["status"] == "promoted"
    assert again["status"] == "already_admin"
    assert store.find_by_username("joe").has_role(ROLE_ADMIN)


async def test_dry_run_changes_nothing(bootstrap):
    result = await bootstrap.bootstrap_admin(
        "admin", "admin@example.com", "long-enough-pw", dry_run=True
    )

    assert result["status"] == "dry_run"
    assert get_runtime().store.find_by_username("admin") is None
