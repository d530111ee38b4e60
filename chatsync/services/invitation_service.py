"""InvitationService: single-use registration codes."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from chatsync.adapters.store.base import FieldFilter, OrderBy, RemoteStore, Subscription, Transaction
from chatsync.config import Settings, get_settings
from chatsync.constants.collections import Collection
from chatsync.core.listener_registry import ListenerHandle, ListenerKey, ListenerRegistry
from chatsync.exceptions import (
    ChatSyncError,
    InvitationError,
    InvitationReason,
    NotAuthorizedError,
    SubscriptionError,
)
from chatsync.infra.logging_config import get_logger
from chatsync.schemas.invitation import Invitation, generate_code, normalize_code
from chatsync.schemas.user import User
from chatsync.services.chat_store_service import ChatStoreService, decode, decode_one

logger = get_logger("invitations")


class InvitationService:
    def __init__(
        self,
        store: RemoteStore,
        registry: ListenerRegistry,
        chat_store: Optional[ChatStoreService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self.chat_store = chat_store or ChatStoreService(store, self.settings)
        self.my_invitations: List[Invitation] = []
        self._handle: Optional[ListenerHandle] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Create / validate
    # ------------------------------------------------------------------

    async def create_invitation(
        self, user: User, expires_in_days: Optional[int] = None
    ) -> Invitation:
        """Create a code owned by `user`. Expiry defaults to Settings.invitation_expiry_days."""
        if not user.may_invite:
            raise NotAuthorizedError("You are not authorized to create invitations.")
        if not user.id:
            raise InvitationError(InvitationReason.CREATION_FAILED)

        days = expires_in_days if expires_in_days is not None else self.settings.invitation_expiry_days
        now = datetime.now(timezone.utc)
        invitation = Invitation(
            code=generate_code(self.settings.invitation_code_length),
            created_by=user.id,
            created_at=now,
            expires_at=now + timedelta(days=days) if days is not None else None,
        )
        try:
            invitation.id = await self.store.create(Collection.INVITATIONS, invitation.to_document())
        except ChatSyncError as e:
            logger.error("Failed to create invitation: %s", e)
            raise InvitationError(InvitationReason.CREATION_FAILED) from e
        logger.info("User %s created invitation %s", user.id, invitation.id)
        return invitation

    async def find_by_code(self, code: str) -> Optional[Invitation]:
        docs = await self.store.query(
            Collection.INVITATIONS,
            [FieldFilter("code", "==", normalize_code(code))],
            limit=1,
        )
        found = decode(Invitation, docs)
        return found[0] if found else None

    @staticmethod
    def check(invitation: Optional[Invitation]) -> Invitation:
        if invitation is None:
            raise InvitationError(InvitationReason.INVALID)
        if invitation.is_used:
            raise InvitationError(InvitationReason.USED)
        if invitation.is_expired:
            raise InvitationError(InvitationReason.EXPIRED)
        return invitation

    async def validate_invitation(self, code: str) -> Invitation:
        return self.check(await self.find_by_code(code))

    # ------------------------------------------------------------------
    # Claim / release
    # ------------------------------------------------------------------

    async def claim_invitation(self, code: str, claimed_by: Optional[str] = None) -> Invitation:
        """
        Atomically flip isUsed from false to true.

        Two concurrent claims of the same code cannot both succeed; the loser
        gets InvitationError(USED). `claimed_by` may be unknown at claim time
        (registration claims before the account exists) and stamped later.
        """
        found = await self.find_by_code(code)
        if found is None or not found.id:
            raise InvitationError(InvitationReason.INVALID)
        invitation_id = found.id

        async def claim(txn: Transaction) -> Invitation:
            current = self.check(
                decode_one(Invitation, await txn.get(Collection.INVITATIONS, invitation_id))
            )
            txn.update(
                Collection.INVITATIONS,
                invitation_id,
                {"isUsed": True, "usedBy": claimed_by},
            )
            return current.model_copy(update={"is_used": True, "used_by": claimed_by})

        return await self.store.run_transaction(claim)

    async def mark_used_by(self, invitation: Invitation, user_id: str) -> None:
        await self.store.update(Collection.INVITATIONS, invitation.id, {"usedBy": user_id})

    async def release_invitation(self, invitation: Invitation) -> None:
        """Undo a claim (registration rollback)."""
        await self.store.update(
            Collection.INVITATIONS, invitation.id, {"isUsed": False, "usedBy": None}
        )
        logger.info("Released invitation %s", invitation.id)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def get_invitations(self, created_by: str) -> List[Invitation]:
        docs = await self.store.query(
            Collection.INVITATIONS,
            [FieldFilter("createdBy", "==", created_by)],
            order_by=OrderBy("createdAt", descending=True),
        )
        return decode(Invitation, docs)

    def listen_to_my_invitations(self, user_id: str) -> None:
        subscription = self.store.subscribe(
            Collection.INVITATIONS,
            [FieldFilter("createdBy", "==", user_id)],
            order_by=OrderBy("createdAt", descending=True),
        )
        self._task = asyncio.get_running_loop().create_task(self._consume(subscription))
        self._handle = self.registry.register(ListenerKey.invitations(user_id), subscription.cancel)

    async def _consume(self, subscription: Subscription) -> None:
        try:
            async for documents in subscription:
                self.my_invitations = decode(Invitation, documents)
        except SubscriptionError as e:
            logger.warning("Invitation subscription failed: %s", e)

    def stop_listening(self) -> None:
        self.registry.cancel(self._handle)
        self._handle = None
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        self.my_invitations = []

    @property
    def active_invitations(self) -> List[Invitation]:
        return [i for i in self.my_invitations if i.is_valid]

    @property
    def used_invitations(self) -> List[Invitation]:
        return [i for i in self.my_invitations if i.is_used]

    @property
    def expired_invitations(self) -> List[Invitation]:
        return [i for i in self.my_invitations if not i.is_used and i.is_expired]

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def delete_invitation(self, invitation: Invitation, requested_by: User) -> None:
        if not invitation.id:
            return
        if not (requested_by.is_admin or requested_by.id == invitation.created_by):
            raise NotAuthorizedError("You can only delete your own invitations.")
        await self.store.delete(Collection.INVITATIONS, invitation.id)

    async def grant_invite_permission(self, user_id: str, granted_by: User) -> None:
        if not granted_by.is_admin:
            raise NotAuthorizedError("Only admins can change invite permissions.")
        await self.chat_store.set_can_invite(user_id, True)

    async def revoke_invite_permission(self, user_id: str, revoked_by: User) -> None:
        if not revoked_by.is_admin:
            raise NotAuthorizedError("Only admins can change invite permissions.")
        await self.chat_store.set_can_invite(user_id, False)
