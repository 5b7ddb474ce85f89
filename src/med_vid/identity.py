"""Acting-user context shared by the publishing flow and HTTP layer."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    """An authenticated user as reported by the identity provider."""

    user_id: str
    display_name: str | None = None
    email: str | None = None
    is_admin: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.user_id, str) or not self.user_id.strip():
            raise ValueError("Identity requires a non-empty user id")
        object.__setattr__(self, "user_id", self.user_id.strip())
        if self.display_name is not None:
            name = str(self.display_name).strip()
            object.__setattr__(self, "display_name", name or None)

    @property
    def label(self) -> str:
        """Name shown next to published videos."""

        return self.display_name or self.email or "Unknown Doctor"

    def to_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "email": self.email,
            "is_admin": self.is_admin,
        }


IdentityHandler = Callable[["Identity | None"], None]


class IdentityContext:
    """Holds the current identity and notifies subscribers when it changes."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity
        self._handlers: list[IdentityHandler] = []
        self._lock = threading.Lock()

    @property
    def current(self) -> Identity | None:
        with self._lock:
            return self._identity

    def set_identity(self, identity: Identity | None) -> None:
        with self._lock:
            if identity == self._identity:
                return
            self._identity = identity
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(identity)
            except Exception:
                logger.exception("Identity change handler failed")

    def on_identity_change(self, handler: IdentityHandler) -> Callable[[], None]:
        """Register ``handler`` and return a callable that unsubscribes it."""

        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._handlers.remove(handler)
                except ValueError:
                    pass

        return _unsubscribe


def identity_from_headers(
    user_id: str | None,
    display_name: str | None = None,
    admin_flag: str | None = None,
) -> Identity | None:
    """Build an identity from request header values, or ``None`` if absent."""

    if user_id is None or not user_id.strip():
        return None
    is_admin = False
    if admin_flag is not None:
        is_admin = admin_flag.strip().lower() in {"1", "true", "yes", "on"}
    return Identity(user_id=user_id, display_name=display_name, is_admin=is_admin)


__all__ = ["Identity", "IdentityContext", "IdentityHandler", "identity_from_headers"]
