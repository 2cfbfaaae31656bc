"""Tests for API key issuance/verification and the per-request guard."""

from datetime import datetime, timedelta, timezone

import pytest

from catalogauth.service.api_keys import ApiKeyManager
from catalogauth.service.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from catalogauth.service.guard import Identity, extract_bearer
from catalogauth.storage.models import Role, UserStatus, utcnow


@pytest.fixture
def alice(memory_store):
    return memory_store.create_user("alice", "alice@example.com", "digest", role=Role.EDITOR)


@pytest.fixture
def admin(memory_store):
    return memory_store.create_user("root", "root@example.com", "digest", role=Role.ADMIN)


def _identity(user):
    return Identity(
        user_id=user.id, username=user.username, email=user.email, role=user.role, method="bearer"
    )


class TestApiKeyCreate:
    """Tests for ApiKeyManager.create."""

    def test_raw_key_returned_once_and_only_digest_stored(self, api_key_manager, memory_store, alice):
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])

        assert created.raw_key.startswith("mdl_")
        assert len(created.raw_key) == len("mdl_") + 64
        stored = memory_store.find_api_key_by_id(created.record.id)
        assert stored.key_hash == api_key_manager.digest(created.raw_key)
        assert created.raw_key not in stored.key_hash

    def test_scopes_are_normalized(self, api_key_manager, alice):
        created = api_key_manager.create(alice.id, "ci", [" metrics:write", "metrics:read", "metrics:read"])
        assert created.record.scopes == ["metrics:read", "metrics:write"]

    def test_unknown_scope_rejected(self, api_key_manager, alice):
        with pytest.raises(ValidationError) as exc_info:
            api_key_manager.create(alice.id, "ci", ["metrics:read", "root:everything"])
        assert exc_info.value.detail["unknown"] == ["root:everything"]
        assert "admin" in exc_info.value.detail["allowed"]

    @pytest.mark.parametrize("scopes", [[], ["", "  "]])
    def test_empty_scopes_rejected(self, api_key_manager, alice, scopes):
        with pytest.raises(ValidationError):
            api_key_manager.create(alice.id, "ci", scopes)

    def test_name_required(self, api_key_manager, alice):
        with pytest.raises(ValidationError):
            api_key_manager.create(alice.id, "   ", ["metrics:read"])

    def test_past_expiry_rejected(self, api_key_manager, alice):
        with pytest.raises(ValidationError):
            api_key_manager.create(
                alice.id, "ci", ["metrics:read"], expires_at=utcnow() - timedelta(minutes=1)
            )

    def test_naive_expiry_treated_as_utc(self, api_key_manager, alice):
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(days=1)
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"], expires_at=naive)
        assert created.record.expires_at.tzinfo is timezone.utc

    def test_unknown_user(self, api_key_manager):
        with pytest.raises(NotFoundError):
            api_key_manager.create("missing", "ci", ["metrics:read"])


class TestApiKeyVerify:
    """Tests for ApiKeyManager.verify."""

    def test_valid_key_resolves_owner(self, api_key_manager, memory_store, alice):
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])

        identity = api_key_manager.verify(created.raw_key)

        assert identity.user_id == alice.id
        assert identity.role is Role.EDITOR
        assert identity.method == "api_key"
        assert identity.scopes == frozenset({"metrics:read"})
        assert identity.key_id == created.record.id
        assert memory_store.find_api_key_by_id(created.record.id).last_used_at is not None

    @pytest.mark.parametrize("raw", ["", "nope", "mdl_" + "0" * 64])
    def test_unknown_keys_rejected(self, api_key_manager, raw):
        with pytest.raises(AuthenticationError) as exc_info:
            api_key_manager.verify(raw)
        assert exc_info.value.message == "invalid api key"

    def test_revoked_key_rejected(self, api_key_manager, alice):
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])
        api_key_manager.revoke(created.record.id, _identity(alice))
        with pytest.raises(AuthenticationError):
            api_key_manager.verify(created.raw_key)

    def test_expired_key_rejected(self, memory_store, settings, alice):
        now = [utcnow()]
        manager = ApiKeyManager(memory_store, settings, clock=lambda: now[0])
        created = manager.create(alice.id, "ci", ["metrics:read"], expires_at=now[0] + timedelta(hours=1))

        now[0] = now[0] + timedelta(hours=2)
        with pytest.raises(AuthenticationError):
            manager.verify(created.raw_key)

    def test_inactive_owner_rejected(self, api_key_manager, memory_store, alice):
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])
        memory_store.update_user(alice.id, status=UserStatus.SUSPENDED)
        with pytest.raises(AuthenticationError):
            api_key_manager.verify(created.raw_key)


class TestApiKeyRevoke:
    """Tests for ApiKeyManager.revoke and list_for_user."""

    def test_owner_revokes(self, api_key_manager, alice):
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])
        record = api_key_manager.revoke(created.record.id, _identity(alice))
        assert record.revoked is True

    def test_other_user_cannot_revoke(self, api_key_manager, memory_store, alice):
        bob = memory_store.create_user("bobby", "bob@example.com", "digest")
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])
        with pytest.raises(AuthorizationError):
            api_key_manager.revoke(created.record.id, _identity(bob))

    def test_admin_can_revoke_any(self, api_key_manager, alice, admin):
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])
        assert api_key_manager.revoke(created.record.id, _identity(admin)).revoked

    def test_unknown_key(self, api_key_manager, alice):
        with pytest.raises(NotFoundError):
            api_key_manager.revoke("missing", _identity(alice))

    def test_list_for_user(self, api_key_manager, alice, admin):
        api_key_manager.create(alice.id, "one", ["metrics:read"])
        api_key_manager.create(alice.id, "two", ["domains:read"])
        api_key_manager.create(admin.id, "three", ["admin"])
        assert sorted(k.name for k in api_key_manager.list_for_user(alice.id)) == ["one", "two"]


class TestGuard:
    """Tests for AuthorizationGuard."""

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer  abc ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected

    def test_bearer_token_resolves_identity(self, guard, token_service, alice):
        issued = token_service.issue_pair(alice)
        identity = guard.authenticate(f"Bearer {issued.access_token}")
        assert identity.user_id == alice.id
        assert identity.method == "bearer"
        assert identity.scopes is None
        assert identity.family_id == issued.family_id

    def test_api_key_resolves_identity(self, guard, api_key_manager, alice):
        created = api_key_manager.create(alice.id, "ci", ["metrics:read"])
        identity = guard.authenticate(None, created.raw_key)
        assert identity.method == "api_key"

    def test_failures_are_uniform(self, guard):
        messages = set()
        for authorization, api_key in [(None, None), ("Bearer junk", None), (None, "mdl_junk")]:
            with pytest.raises(AuthenticationError) as exc_info:
                guard.authenticate(authorization, api_key)
            messages.add(exc_info.value.message)
        assert messages == {"authentication required"}

    def test_require_role(self, guard, token_service, memory_store, alice, admin):
        viewer = memory_store.create_user("val", "val@example.com", "digest", role=Role.VIEWER)
        editor_token = token_service.issue_pair(alice).access_token
        viewer_token = token_service.issue_pair(viewer).access_token
        admin_token = token_service.issue_pair(admin).access_token

        assert guard.require_role(Role.EDITOR, authorization=f"Bearer {editor_token}").user_id == alice.id
        assert guard.require_role(Role.EDITOR, authorization=f"Bearer {admin_token}").user_id == admin.id
        with pytest.raises(AuthorizationError) as exc_info:
            guard.require_role(Role.EDITOR, authorization=f"Bearer {viewer_token}")
        assert not isinstance(exc_info.value, AuthenticationError)
        assert exc_info.value.status_code == 403
        with pytest.raises(AuthorizationError):
            guard.require_role(Role.ADMIN, authorization=f"Bearer {editor_token}")

    def test_non_ascii_signature_is_an_authentication_failure(self, guard, token_service, alice):
        header, payload, _ = token_service.issue_pair(alice).access_token.split(".")
        forged = f"Bearer {header}.{payload}.éé"
        with pytest.raises(AuthenticationError) as exc_info:
            guard.authenticate(forged)
        assert exc_info.value.message == "authentication required"
        assert guard.optional_authenticate(forged) is None

    def test_owner_or_admin(self, guard, alice, admin):
        assert guard.require_owner_or_admin(_identity(alice), alice.id)
        assert guard.require_owner_or_admin(_identity(admin), alice.id)
        with pytest.raises(AuthorizationError):
            guard.require_owner_or_admin(_identity(alice), admin.id)
        with pytest.raises(AuthorizationError):
            guard.require_owner_or_admin(_identity(alice), None)

    def test_scopes(self, guard, api_key_manager, alice, admin):
        limited = guard.authenticate(None, api_key_manager.create(alice.id, "ci", ["metrics:read"]).raw_key)
        full = guard.authenticate(None, api_key_manager.create(admin.id, "ops", ["admin"]).raw_key)

        assert guard.require_scope(limited, "metrics:read")
        with pytest.raises(AuthorizationError):
            guard.require_scope(limited, "metrics:write")
        assert guard.require_scope(full, "metrics:write")
        # bearer identities are unrestricted
        assert guard.require_scope(_identity(alice), "admin")

    def test_optional_authenticate(self, guard, token_service, alice):
        assert guard.optional_authenticate(None) is None
        assert guard.optional_authenticate("Bearer junk") is None
        token = token_service.issue_pair(alice).access_token
        assert guard.optional_authenticate(f"Bearer {token}").user_id == alice.id
