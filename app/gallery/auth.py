"""
Identity collaborator.

Everything the submission core needs to know about the caller is an ``Actor``.
How that actor is established (session cookie here, anything else in tests or
other deployments) sits behind ``IdentityProvider``; the provider in use lives
in ``app.extensions["gallery_identity"]``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.gallery.audit import record_event
from app.gallery.db import db_session
from app.gallery.errors import AuthenticationRequired, ValidationError
from app.gallery.models import User

bp = Blueprint("auth", __name__)


@dataclass(frozen=True)
class Actor:
    id: int
    role: str
    troupe_id: int | None = None
    granted_district_ids: frozenset[int] = field(default_factory=frozenset)
    email: str | None = None
    force_password_change: bool = False

    @classmethod
    def from_user(cls, user: User) -> Actor:
        return cls(
            id=user.id,
            role=user.role,
            troupe_id=user.troupe_id,
            granted_district_ids=user.granted_district_ids,
            email=user.email,
            force_password_change=user.force_password_change,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "troupeId": self.troupe_id,
            "districtIds": sorted(self.granted_district_ids),
            "forcePasswordChange": self.force_password_change,
        }


class IdentityProvider:
    def current_actor(self) -> Actor | None:
        raise NotImplementedError


class SessionIdentity(IdentityProvider):
    """Reads ``user_id`` from the signed session cookie and re-checks ``is_active``."""

    def current_actor(self) -> Actor | None:
        user_id = session.get("user_id")
        if not user_id:
            return None
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            return None
        return Actor.from_user(user)


def load_current_user() -> None:
    """
    Loads g.current_actor through the configured identity provider.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_actor = None
        return

    provider: IdentityProvider = current_app.extensions["gallery_identity"]
    g.current_actor = provider.current_actor()


def current_actor() -> Actor | None:
    return getattr(g, "current_actor", None)


def require_actor() -> Actor:
    actor = current_actor()
    if actor is None:
        raise AuthenticationRequired()
    return actor


@bp.post("/login")
def login_post():
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not email or not password:
        raise ValidationError("email and password are required")

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
        )
        s.commit()
        return jsonify({"error": "Invalid credentials", "code": "ERR_UNAUTHENTICATED"}), 401

    session["user_id"] = user.id
    actor = Actor.from_user(user)
    record_event(s, actor=actor, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"user": actor.to_dict()})


@bp.post("/logout")
def logout():
    actor = current_actor()
    if actor:
        s = db_session()
        record_event(s, actor=actor, action="auth.logout", entity_type="User", entity_id=str(actor.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"ok": True})


@bp.get("/me")
def me():
    actor = require_actor()
    return jsonify({"user": actor.to_dict()})
