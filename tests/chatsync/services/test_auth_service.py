"""Tests for AuthService: invite-gated registration saga, login, logout, restore."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from chatsync.core.listener_registry import ListenerKey
from chatsync.exceptions import (
    AuthError,
    AuthReason,
    InvitationError,
    InvitationReason,
    NotAuthorizedError,
    RemoteStoreError,
)
from chatsync.services.auth_service import AuthService
from chatsync.services.session_storage import SessionStorage
from tests.fixtures.store_fixtures import drain

PASSWORD = "secret123"


@pytest.fixture
def storage(settings):
    return SessionStorage(settings=settings)


@pytest.fixture
def auth_service(identity, chat_store, invitation_service, registry, storage, settings):
    return AuthService(identity, chat_store, invitation_service, registry, storage, settings)


async def _register_admin(auth_service):
    result = await auth_service.register("admin@example.com", PASSWORD, "Admin")
    assert result.ok
    return result.value


@pytest.mark.asyncio
async def test_first_user_becomes_admin_without_code(auth_service, storage, registry):
    seen = []
    auth_service.on_auth_state_change(seen.append)

    result = await auth_service.register(" Admin@Example.COM ", PASSWORD, "  Ada Admin ")

    user = result.value
    assert user.is_admin and user.can_invite
    assert user.email == "admin@example.com"
    assert user.display_name == "Ada Admin"
    assert user.invited_by is None
    assert auth_service.is_authenticated
    assert seen == [user.id]
    assert storage.load().user_id == user.id
    assert registry.has_listener(ListenerKey.user(user.id))


@pytest.mark.asyncio
async def test_later_users_need_an_invitation_code(auth_service, identity):
    await _register_admin(auth_service)

    result = await auth_service.register("bob@example.com", PASSWORD, "Bob")

    assert result.error.reason == AuthReason.INVALID_INVITATION
    assert not identity.has_account("bob@example.com")


@pytest.mark.asyncio
async def test_registration_with_code_records_inviter(auth_service, invitation_service, chat_store):
    admin = await _register_admin(auth_service)
    invitation = await invitation_service.create_invitation(admin)

    result = await auth_service.register("bob@example.com", PASSWORD, "Bob", invitation.code.lower())

    bob = result.value
    assert not bob.is_admin and not bob.can_invite
    assert bob.invited_by == admin.id
    stored = await invitation_service.find_by_code(invitation.code)
    assert stored.is_used
    assert stored.used_by == bob.id
    assert (await chat_store.get_user(bob.id)).display_name == "Bob"


@pytest.mark.asyncio
async def test_used_code_is_rejected(auth_service, invitation_service, identity):
    admin = await _register_admin(auth_service)
    invitation = await invitation_service.create_invitation(admin)
    assert (await auth_service.register("bob@example.com", PASSWORD, "Bob", invitation.code)).ok

    result = await auth_service.register("carol@example.com", PASSWORD, "Carol", invitation.code)

    assert result.error.message == "This invitation code has already been used."
    assert not identity.has_account("carol@example.com")



@pytest.mark.asyncio
async def test_concurrent_registrations_with_one_code_have_one_winner(
    auth_service, invitation_service, identity
):
    admin = await _register_admin(auth_service)
    invitation = await invitation_service.create_invitation(admin)

    results = await asyncio.gather(
        auth_service.register("bob@example.com", PASSWORD, "Bob", invitation.code),
        auth_service.register("carol@example.com", PASSWORD, "Carol", invitation.code),
    )

    winners = [r.value for r in results if r.ok]
    losers = [r.error for r in results if not r.ok]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], InvitationError)
    assert losers[0].reason == InvitationReason.USED
    assert sum(identity.has_account(e) for e in ("bob@example.com", "carol@example.com")) == 1
    stored = await invitation_service.find_by_code(invitation.code)
    assert stored.used_by == winners[0].id


@pytest.mark.asyncio
async def test_profile_write_failure_rolls_back_account_and_invitation(
    auth_service, invitation_service, chat_store, identity
):
    admin = await _register_admin(auth_service)
    invitation = await invitation_service.create_invitation(admin)

    with patch.object(chat_store, "create_user", side_effect=RemoteStoreError()):
        result = await auth_service.register("bob@example.com", PASSWORD, "Bob", invitation.code)

    assert not result.ok
    assert auth_service.error_message == result.error.message
    assert not identity.has_account("bob@example.com")
    assert (await invitation_service.validate_invitation(invitation.code)).used_by is None


@pytest.mark.asyncio
async def test_email_in_use_releases_claimed_invitation(auth_service, invitation_service):
    admin = await _register_admin(auth_service)
    invitation = await invitation_service.create_invitation(admin)

    result = await auth_service.register("admin@example.com", PASSWORD, "Again", invitation.code)

    assert result.error.reason == AuthReason.EMAIL_IN_USE
    assert await invitation_service.validate_invitation(invitation.code)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "email,password,name,reason",
    [
        ("not-an-email", PASSWORD, "Name", AuthReason.INVALID_EMAIL),
        ("a@example.com", "123", "Name", AuthReason.WEAK_PASSWORD),
        ("a@example.com", PASSWORD, "   ", AuthReason.MISSING_DISPLAY_NAME),
    ],
)
async def test_registration_validation(auth_service, email, password, name, reason):
    result = await auth_service.register(email, password, name)
    assert result.error.reason == reason
    assert not auth_service.is_loading


@pytest.mark.asyncio
async def test_logout_clears_session_listeners_and_presence(auth_service, storage, registry, chat_store):
    admin = await _register_admin(auth_service)
    profile_task = auth_service._task
    assert profile_task is not None and not profile_task.done()
    seen = []
    auth_service.on_auth_state_change(seen.append)

    await auth_service.logout()
    await drain()

    assert auth_service._task is None
    assert profile_task.done()

    assert seen == [None]
    assert not auth_service.is_authenticated
    assert storage.load() is None
    assert registry.active_count == 0
    assert not (await chat_store.get_user(admin.id)).is_online


@pytest.mark.asyncio
async def test_login_marks_user_online(auth_service, chat_store, storage):
    admin = await _register_admin(auth_service)
    await auth_service.logout()

    result = await auth_service.login("ADMIN@example.com", PASSWORD)

    assert result.value.id == admin.id
    assert (await chat_store.get_user(admin.id)).is_online
    assert storage.load().user_id == admin.id


@pytest.mark.asyncio
async def test_login_failures(auth_service, identity):
    await _register_admin(auth_service)
    await auth_service.logout()

    wrong = await auth_service.login("admin@example.com", "wrong-password")
    assert wrong.error.reason == AuthReason.INVALID_CREDENTIALS

    await identity.sign_up("orphan@example.com", PASSWORD)
    orphan = await auth_service.login("orphan@example.com", PASSWORD)
    assert isinstance(orphan.error, NotAuthorizedError)


@pytest.mark.asyncio
async def test_restore_refreshes_expired_session(
    auth_service, identity, chat_store, invitation_service, registry, storage, settings
):
    admin = await _register_admin(auth_service)
    stale = storage.load().model_copy(
        update={"expires_at": datetime.now(timezone.utc) - timedelta(minutes=1)}
    )
    storage.save(stale)

    restarted = AuthService(identity, chat_store, invitation_service, registry, storage, settings)
    result = await restarted.restore_session()

    assert result.value.id == admin.id
    assert restarted.session.id_token != stale.id_token
    assert not storage.load().is_expired


@pytest.mark.asyncio
async def test_restore_with_revoked_refresh_token_clears_storage(auth_service, storage):
    await _register_admin(auth_service)
    storage.save(
        storage.load().model_copy(
            update={
                "refresh_token": "revoked",
                "expires_at": datetime.now(timezone.utc) - timedelta(minutes=1),
            }
        )
    )

    result = await auth_service.restore_session()

    assert isinstance(result.error, AuthError)
    assert result.error.reason == AuthReason.SESSION_EXPIRED
    assert storage.load() is None


@pytest.mark.asyncio
async def test_restore_without_stored_session(auth_service):
    result = await auth_service.restore_session()
    assert result.ok and result.value is None


@pytest.mark.asyncio
async def test_profile_changes_flow_into_current_user(auth_service, chat_store):
    admin = await _register_admin(auth_service)
    await drain()

    assert (await auth_service.update_display_name("  Queen Ada ")).ok
    await drain()

    assert auth_service.current_user.display_name == "Queen Ada"
    empty = await auth_service.update_display_name("  ")
    assert empty.error.reason == AuthReason.MISSING_DISPLAY_NAME


@pytest.mark.asyncio
async def test_get_id_token(auth_service):
    assert await auth_service.get_id_token() is None
    await _register_admin(auth_service)
    assert await auth_service.get_id_token() == auth_service.session.id_token


@pytest.mark.asyncio
async def test_reset_password(auth_service):
    await _register_admin(auth_service)

    assert (await auth_service.reset_password("admin@example.com")).ok
    bad = await auth_service.reset_password("nobody")
    assert bad.error.reason == AuthReason.INVALID_EMAIL


def test_corrupt_session_file_is_ignored(storage):
    storage.path.parent.mkdir(parents=True, exist_ok=True)
    storage.path.write_text("{not json", encoding="utf-8")

    assert storage.load() is None
