"""
AuthService: registration, login, logout and session restore.

Registration is a saga. The first user becomes admin and needs no code;
everyone else claims an invitation first. Each later step (identity account,
profile document) is undone if a following step fails, and the claimed
invitation is released.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from chatsync.adapters.identity.base import AuthSession, IdentityProvider
from chatsync.adapters.store.base import Subscription
from chatsync.config import Settings, get_settings
from chatsync.core.listener_registry import ListenerHandle, ListenerKey, ListenerRegistry
from chatsync.core.saga import Saga
from chatsync.exceptions import (
    AuthError,
    AuthReason,
    ChatSyncError,
    NotAuthorizedError,
    SubscriptionError,
    as_chat_error,
)
from chatsync.infra.logging_config import get_logger
from chatsync.schemas.events import OperationResult
from chatsync.schemas.invitation import Invitation
from chatsync.schemas.user import User
from chatsync.services.chat_store_service import ChatStoreService, decode
from chatsync.services.invitation_service import InvitationService
from chatsync.services.session_storage import SessionStorage
from chatsync.utils.text import is_valid_email, trimmed

logger = get_logger("auth")

AuthListener = Callable[[Optional[str]], None]


class AuthService:
    def __init__(
        self,
        identity: IdentityProvider,
        chat_store: ChatStoreService,
        invitations: InvitationService,
        registry: ListenerRegistry,
        storage: Optional[SessionStorage] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.identity = identity
        self.chat_store = chat_store
        self.invitations = invitations
        self.registry = registry
        self.settings = settings or get_settings()
        self.storage = storage or SessionStorage(settings=self.settings)

        self.session: Optional[AuthSession] = None
        self.current_user_id: Optional[str] = None
        self.current_user: Optional[User] = None
        self.is_loading = False
        self.error_message: Optional[str] = None

        self._handle: Optional[ListenerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[AuthListener] = []

    @property
    def is_authenticated(self) -> bool:
        return self.current_user is not None

    # ------------------------------------------------------------------
    # Auth-state listeners
    # ------------------------------------------------------------------

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        """`listener` receives the signed-in user id, or None after sign-out."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, user_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(user_id)
            except Exception:
                logger.exception("Auth listener failed")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_credentials(self, email: str, password: str) -> None:
        if not is_valid_email(email):
            raise AuthError(AuthReason.INVALID_EMAIL)
        if len(password) < self.settings.minimum_password_length:
            raise AuthError(
                AuthReason.WEAK_PASSWORD,
                f"Password must be at least {self.settings.minimum_password_length} characters.",
            )

    def validate_registration(self, email: str, password: str, display_name: str) -> None:
        self.validate_credentials(email, password)
        if not trimmed(display_name):
            raise AuthError(AuthReason.MISSING_DISPLAY_NAME)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        display_name: str,
        invitation_code: Optional[str] = None,
    ) -> OperationResult[User]:
        email = email.strip().lower()
        display_name = trimmed(display_name)
        self.is_loading = True
        try:
            self.validate_registration(email, password, display_name)
            first_user = await self.chat_store.is_first_user()
            if not first_user and not trimmed(invitation_code):
                raise AuthError(AuthReason.INVALID_INVITATION)
            user, session = await self._run_registration(
                email, password, display_name, None if first_user else invitation_code
            )
        except ChatSyncError as e:
            logger.warning("Registration failed for %s: %s", email, e)
            return self._fail(e)
        finally:
            self.is_loading = False

        logger.info("Registered %s (admin=%s)", user.id, user.is_admin)
        self._signed_in(session, user)
        return OperationResult.success(user)

    async def _run_registration(
        self,
        email: str,
        password: str,
        display_name: str,
        invitation_code: Optional[str],
    ) -> tuple[User, AuthSession]:
        is_admin = invitation_code is None
        invitation: Optional[Invitation] = None
        session: Optional[AuthSession] = None
        user: Optional[User] = None

        async def claim() -> None:
            nonlocal invitation
            invitation = await self.invitations.claim_invitation(invitation_code)

        async def release() -> None:
            await self.invitations.release_invitation(invitation)

        async def sign_up() -> None:
            nonlocal session
            session = await self.identity.sign_up(email, password)

        async def delete_account() -> None:
            await self.identity.delete_account(session)

        async def write_profile() -> None:
            nonlocal user
            user = User(
                id=session.user_id,
                email=email,
                display_name=display_name,
                is_admin=is_admin,
                can_invite=is_admin,
                invited_by=invitation.created_by if invitation else None,
                is_online=True,
            )
            await self.chat_store.create_user(user)

        async def delete_profile() -> None:
            await self.chat_store.delete_user(session.user_id)

        async def stamp_invitation() -> None:
            await self.invitations.mark_used_by(invitation, session.user_id)

        saga = Saga(f"register-{email}")
        if invitation_code is not None:
            saga.step("claim_invitation", claim, release)
        saga.step("sign_up", sign_up, delete_account)
        saga.step("write_profile", write_profile, delete_profile)
        if invitation_code is not None:
            saga.step("stamp_invitation", stamp_invitation)
        await saga.run()
        return user, session

    # ------------------------------------------------------------------
    # Login / logout / restore
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> OperationResult[User]:
        self.is_loading = True
        try:
            if not is_valid_email(email):
                raise AuthError(AuthReason.INVALID_EMAIL)
            session = await self.identity.sign_in(email.strip().lower(), password)
            user = await self.chat_store.get_user(session.user_id)
            if user is None:
                raise NotAuthorizedError("No profile exists for this account.")
        except ChatSyncError as e:
            logger.warning("Login failed for %s: %s", email, e)
            return self._fail(e)
        finally:
            self.is_loading = False
        logger.info("Signed in %s", user.id)
        self._signed_in(session, user)
        await self.update_online_status(True)
        return OperationResult.success(user)

    async def logout(self) -> None:
        await self.update_online_status(False)
        self.registry.cancel_all()
        self._handle = None
        self._cancel_task()
        self.storage.clear()
        await self.identity.sign_out()
        user_id = self.current_user_id
        self.session = None
        self.current_user_id = None
        self.current_user = None
        logger.info("Signed out %s", user_id)
        self._notify(None)

    async def restore_session(self) -> OperationResult[Optional[User]]:
        """Resume a stored session, refreshing its tokens when they have expired."""
        session = self.storage.load()
        if session is None:
            return OperationResult.success(None)
        try:
            if session.is_expired:
                session = await self.identity.refresh(session)
            user = await self.chat_store.get_user(session.user_id)
        except AuthError as e:
            logger.warning("Stored session could not be refreshed: %s", e)
            self.storage.clear()
            return OperationResult.failure(e)
        except ChatSyncError as e:
            return self._fail(e)
        if user is None:
            self.storage.clear()
            return OperationResult.success(None)
        self._signed_in(session, user)
        await self.update_online_status(True)
        return OperationResult.success(user)

    def _signed_in(self, session: AuthSession, user: User) -> None:
        self.session = session
        self.current_user_id = session.user_id
        self.current_user = user
        self.error_message = None
        self.storage.save(session)
        self.watch_current_user(session.user_id)
        self._notify(session.user_id)

    async def reset_password(self, email: str) -> OperationResult[None]:
        try:
            if not is_valid_email(email):
                raise AuthError(AuthReason.INVALID_EMAIL)
            await self.identity.send_password_reset(email.strip().lower())
        except ChatSyncError as e:
            return self._fail(e)
        return OperationResult.success()

    async def get_id_token(self) -> Optional[str]:
        session = self.session or self.storage.load()
        if session is None:
            return None
        if session.is_expired:
            try:
                session = await self.identity.refresh(session)
            except ChatSyncError as e:
                logger.warning("Token refresh failed: %s", e)
                self.storage.clear()
                self.session = None
                return None
            self.session = session
            self.storage.save(session)
        return session.id_token

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def update_online_status(self, is_online: bool) -> None:
        if self.current_user_id is None:
            return
        try:
            await self.chat_store.set_online_status(self.current_user_id, is_online)
        except ChatSyncError as e:
            logger.warning("Could not update online status: %s", e)

    async def update_display_name(self, display_name: str) -> OperationResult[None]:
        name = trimmed(display_name)
        if not name:
            return self._fail(AuthError(AuthReason.MISSING_DISPLAY_NAME))
        if self.current_user_id is None:
            return self._fail(NotAuthorizedError())
        try:
            await self.chat_store.update_display_name(self.current_user_id, name)
        except ChatSyncError as e:
            return self._fail(e)
        return OperationResult.success()

    def watch_current_user(self, user_id: str) -> None:
        self.registry.cancel(self._handle)
        self._cancel_task()
        subscription = self.chat_store.listen_user(user_id)
        self._task = asyncio.get_running_loop().create_task(
            self._consume_user(subscription, user_id), name=f"user-{user_id}"
        )
        self._handle = self.registry.register(ListenerKey.user(user_id), subscription.cancel)

    async def _consume_user(self, subscription: Subscription, user_id: str) -> None:
        try:
            async for documents in subscription:
                if self.current_user_id != user_id:
                    continue
                found = decode(User, documents)
                self.current_user = found[0] if found else None
        except SubscriptionError as e:
            logger.warning("Profile subscription failed: %s", e)

    def _cancel_task(self) -> None:
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    def _fail(self, exc: BaseException) -> OperationResult:
        error = as_chat_error(exc)
        self.error_message = error.message
        return OperationResult.failure(error)
