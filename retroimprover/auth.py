"""
Bearer-token authentication for the API.

Tokens are issued elsewhere (Supabase Auth in production); this module only
verifies them and loads the caller's profile. Routes get the caller through
the ``current_user`` dependency, which looks up the authenticator the app
was built with on ``app.state``.
"""

import logging
import secrets
import threading
from typing import Optional

from fastapi import HTTPException, Request

from .pipeline.errors import Unauthenticated
from .pipeline.models import User

logger = logging.getLogger(__name__)


class Authenticator:
    async def authenticate(self, token: str) -> User:
        """Raises Unauthenticated for an unknown, expired or malformed token."""
        raise NotImplementedError


class InMemoryAuthenticator(Authenticator):
    """Static token → user table. Local development and tests."""

    def __init__(self, users: Optional[dict[str, User]] = None):
        self._lock = threading.Lock()
        self._users: dict[str, User] = dict(users or {})

    def register(self, token: str, user: User):
        with self._lock:
            self._users[token] = user

    async def authenticate(self, token: str) -> User:
        with self._lock:
            items = list(self._users.items())
        for known, user in items:
            # Constant-time compare avoids timing attacks
            if secrets.compare_digest(known, token):
                return user
        raise Unauthenticated("Invalid or expired token.")


class SupabaseAuthenticator(Authenticator):
    """Verifies the JWT with Supabase Auth, then reads the ``profiles`` row."""

    def __init__(self, client):
        self._sb = client

    async def authenticate(self, token: str) -> User:
        try:
            response = self._sb.auth.get_user(token)
        except Exception as e:
            logger.info(f"Token rejected by Supabase: {e}")
            raise Unauthenticated("Invalid or expired token.")

        auth_user = getattr(response, "user", None)
        if auth_user is None:
            raise Unauthenticated("Invalid or expired token.")

        result = (
            self._sb.table("profiles")
            .select("credit_balance, language, is_subscribed, has_password")
            .eq("id", auth_user.id)
            .limit(1)
            .execute()
        )
        profile = result.data[0] if result.data else {}
        return User(
            id=auth_user.id,
            email=getattr(auth_user, "email", None),
            credits=int(profile.get("credit_balance") or 0),
            language=profile.get("language") or "en",
            is_subscribed=bool(profile.get("is_subscribed", False)),
            has_password=bool(profile.get("has_password", False)),
        )


# ── FastAPI dependencies ─────────────────────────────────────────────────────

def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def current_user(request: Request) -> User:
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(status_code=401, detail=Unauthenticated("Missing bearer token.").to_detail())
    authenticator: Authenticator = request.app.state.authenticator
    try:
        return await authenticator.authenticate(token)
    except Unauthenticated as e:
        raise HTTPException(status_code=401, detail=e.to_detail())
