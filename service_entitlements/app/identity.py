"""
Caller identity providers.

Authentication happens outside the engine; these adapters only answer
"who is the current user", or ``None`` when nobody is signed in.
"""

from abc import ABC, abstractmethod
from typing import Optional

from shared.logging import user_id_var


class IdentityProvider(ABC):
    """Source of the current user id."""

    @abstractmethod
    def get_current_user_id(self) -> Optional[str]:
        ...


class StaticIdentity(IdentityProvider):
    """Fixed identity, for embedded single-user use and tests."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    def get_current_user_id(self) -> Optional[str]:
        return self.user_id

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id

    def sign_out(self) -> None:
        self.user_id = None


class ContextIdentity(IdentityProvider):
    """Identity carried in the request context (set by the HTTP middleware)."""

    def get_current_user_id(self) -> Optional[str]:
        return user_id_var.get() or None
