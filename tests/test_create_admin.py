"""Tests for the admin bootstrap script."""

import asyncio

from catalogauth.service.runtime import get_runtime, reset_runtime_for_tests
from catalogauth.storage.models import Role
from scripts.create_admin import create_admin, main

PASSWORD = "Adm1n!Passw0rd"


class TestCreateAdmin:
    def test_creates_then_is_idempotent(self):
        runtime = get_runtime()

        first = asyncio.run(create_admin(runtime, "admin", "admin@mdl.local", PASSWORD))
        second = asyncio.run(create_admin(runtime, "admin", "admin@mdl.local", PASSWORD))

        assert first["status"] == "created"
        assert second == {"user_id": first["user_id"], "username": "admin", "status": "already_admin"}
        user = runtime.store.find_user_by_id(first["user_id"])
        assert user.role is Role.ADMIN
        assert runtime.credentials.verify(PASSWORD, user.password_hash)

    def test_promotes_existing_user(self):
        runtime = get_runtime()
        existing = asyncio.run(runtime.auth.register("admin", "admin@mdl.local", PASSWORD))

        result = asyncio.run(create_admin(runtime, "admin", "admin@mdl.local", PASSWORD))

        assert result["status"] == "promoted"
        assert runtime.store.find_user_by_id(existing.user.id).role is Role.ADMIN

    def test_dry_run_changes_nothing(self):
        runtime = get_runtime()
        result = asyncio.run(
            create_admin(runtime, "admin", "admin@mdl.local", PASSWORD, dry_run=True)
        )
        assert result["status"] == "dry_run"
        assert runtime.store.find_user_by_username("admin") is None


class TestMain:
    def test_main_creates_admin(self, capsys):
        assert main(["--password", PASSWORD]) == 0
        assert "Admin user created: admin" in capsys.readouterr().out

    def test_main_requires_password(self, monkeypatch, capsys):
        monkeypatch.delenv("DEFAULT_ADMIN_PASSWORD", raising=False)
        assert main([]) == 1
        assert "DEFAULT_ADMIN_PASSWORD" in capsys.readouterr().out

    def test_main_reports_weak_password(self, capsys):
        assert main(["--password", "weak"]) == 1
        out = capsys.readouterr().out
        assert "Error:" in out
        assert "  - " in out

    def test_main_takes_password_from_settings(self, monkeypatch, capsys):
        monkeypatch.setenv("DEFAULT_ADMIN_PASSWORD", PASSWORD)
        reset_runtime_for_tests()

        assert main([]) == 0
        assert "Admin user created: admin" in capsys.readouterr().out
        result = asyncio.run(get_runtime().auth.login("admin", PASSWORD))
        assert result.user.role is Role.ADMIN
