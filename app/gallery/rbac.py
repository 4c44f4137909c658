from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.gallery.auth import Actor
from app.gallery.errors import AuthenticationRequired, AuthorizationDenied


def actor_has_role(actor: Actor | None, *roles: str) -> bool:
    return bool(actor and actor.role in roles)


def require_role(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Coarse role gate for administration endpoints. Submission and design-group
    endpoints go through the decision table instead.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            actor: Actor | None = getattr(g, "current_actor", None)
            if actor is None:
                raise AuthenticationRequired()
            if not actor_has_role(actor, *roles):
                raise AuthorizationDenied(
                    actor_id=actor.id,
                    operation=fn.__name__,
                    resource="admin",
                    reason="role_not_permitted",
                )
            return fn(*args, **kwargs)

        return wrapped

    return decorator
