"""
Resolve the authenticated caller from the bearer token.

Tokens are issued upstream (HS256, signed with SECRET_KEY) and carry
`user_id`, `role` and `name`.
"""

import datetime
from dataclasses import dataclass
from functools import wraps
from typing import Optional

import jwt
from flask import current_app, g, jsonify, request

from ..models import USER_ROLES


@dataclass(frozen=True)
class Actor:
    role: str
    id: int
    name: Optional[str] = None

    @property
    def is_pet_owner(self):
        return self.role == "pet_owner"

    @property
    def is_staff(self):
        """Staff and shop owners share every back-office permission."""
        return self.role in ("staff", "owner")


class AuthError(Exception):
    pass


def issue_token(actor, expires_in=datetime.timedelta(hours=1)):
    payload = {
        "user_id": actor.id,
        "role": actor.role,
        "name": actor.name,
        "exp": datetime.datetime.now(datetime.timezone.utc) + expires_in,
    }
    return jwt.encode(payload, current_app.config["SECRET_KEY"], algorithm="HS256")


def decode_actor(token):
    try:
        payload = jwt.decode(
            token, current_app.config["SECRET_KEY"], algorithms=["HS256"]
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired") from None
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token") from None

    role = payload.get("role")
    user_id = payload.get("user_id")
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise AuthError("Token is missing a valid role or user id") from None
    if role not in USER_ROLES:
        raise AuthError("Token is missing a valid role or user id")
    return Actor(role=role, id=user_id, name=payload.get("name"))


def actor_from_request():
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthError("Missing bearer token")
    return decode_actor(token.strip())


def require_actor(view):
    """Decode the caller into `g.actor`, answering 401 when that fails."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        try:
            g.actor = actor_from_request()
        except AuthError as e:
            return jsonify({"status": "error", "code": "UNAUTHORIZED", "message": str(e)}), 401
        return view(*args, **kwargs)

    return wrapper
