from chatsync.adapters.identity.base import AuthSession, IdentityProvider
from chatsync.adapters.identity.memory import InMemoryIdentityProvider

__all__ = ["AuthSession", "IdentityProvider", "InMemoryIdentityProvider"]
