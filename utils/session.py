from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Optional, TypeVar, cast

from flask import current_app, g, jsonify, session

F = TypeVar("F", bound=Callable[..., Any])

SESSION_USER_KEY = "user_id"
SESSION_EMAIL_KEY = "email"


@dataclass(frozen=True)
class Principal:
    """The signed-in user as seen by request handlers."""

    user_id: str
    email: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_session(cls, data: Any) -> Optional["Principal"]:
        """Validate raw cookie data; anything malformed is treated as signed out."""
        if not data:
            return None
        user_id = data.get(SESSION_USER_KEY)
        email = data.get(SESSION_EMAIL_KEY) or ""
        if not isinstance(user_id, str) or not isinstance(email, str):
            return None
        try:
            uuid.UUID(user_id)
        except ValueError:
            return None
        from utils.roles import roles_for

        return cls(user_id=user_id, email=email, roles=frozenset(roles_for(user_id)))

    def has_role(self, role: str) -> bool:
        return role in self.roles


class Subscription:
    def __init__(self, events: "SessionEvents", callback: Callable):
        self._events = events
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._events._listeners.remove(self._callback)
            self.active = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.unsubscribe()
        return False


class SessionEvents:
    """Explicit "session changed" notifications.

    Listeners get ``(event, principal)`` where event is ``signed_in`` or
    ``signed_out``.
    """

    def __init__(self):
        self._listeners: list[Callable] = []

    def subscribe(self, callback: Callable[[str, Optional[Principal]], None]) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self, callback)

    def emit(self, event: str, principal: Optional[Principal]) -> None:
        for cb in list(self._listeners):
            try:
                cb(event, principal)
            except Exception:
                current_app.logger.exception("Session listener %r failed on %s", cb, event)

    def __len__(self):
        return len(self._listeners)


def session_events() -> SessionEvents:
    return current_app.extensions["portal_session_events"]


class PortalSession:
    """Per-request session handle passed explicitly into handlers."""

    def __init__(self, principal: Optional[Principal]):
        self.principal = principal

    @property
    def current_user_id(self) -> Optional[str]:
        return self.principal.user_id if self.principal else None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    def sign_in(self, user) -> Principal:
        session.clear()
        session[SESSION_USER_KEY] = user.id
        session[SESSION_EMAIL_KEY] = user.email
        session.permanent = True
        principal = Principal.from_session(session)
        self.principal = principal
        session_events().emit("signed_in", principal)
        return principal

    def sign_out(self) -> None:
        previous = self.principal
        session.clear()
        self.principal = None
        session_events().emit("signed_out", previous)


def current_session() -> PortalSession:
    """Build (once per request) the PortalSession from the signed cookie."""
    if "portal_session" not in g:
        principal = Principal.from_session(session)
        if principal is None and session.get(SESSION_USER_KEY):
            session.clear()
        g.portal_session = PortalSession(principal)
    return g.portal_session


def login_required(func: F) -> F:
    """Pass the PortalSession as the ``portal`` keyword; 401 when signed out."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        portal = current_session()
        if not portal.is_authenticated:
            return jsonify({"ok": False, "error": "Not logged in"}), 401
        return func(*args, portal=portal, **kwargs)

    return cast(F, wrapper)


def roles_required(*roles: str) -> Callable[[F], F]:
    """Like ``login_required`` but the principal must hold one of ``roles``."""

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            portal = current_session()
            if not portal.is_authenticated:
                return jsonify({"ok": False, "error": "Not logged in"}), 401
            if not (portal.principal.roles & set(roles)):
                return jsonify({"ok": False, "error": "Forbidden"}), 403
            return func(*args, portal=portal, **kwargs)

        return cast(F, wrapper)

    return decorator
