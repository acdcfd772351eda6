"""Viewer identity resolution.

Viewers without credentials get an anonymous id that the web layer keeps in a
cookie. A bearer token is exchanged for a stable id derived from the token and
the deployment secret, so the same token maps to the same viewer everywhere.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, replace
from hashlib import blake2s
from typing import Callable

from .errors import AuthenticationFailure

logger = logging.getLogger("uvicorn.error")

ANONYMOUS_PREFIX = "anon-"
TOKEN_PREFIX = "tok-"

_session_id_pattern = re.compile(r"^(anon-[A-Za-z0-9_-]{16,64}|tok-[0-9a-f]{32})$")
_token_pattern = re.compile(r"^[A-Za-z0-9._~+/=-]{8,512}$")


@dataclass(frozen=True)
class Identity:
    user_id: str
    is_anonymous: bool
    is_new: bool = False


IdentityListener = Callable[[str | None, Identity], None]


class IdentityProvider:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Identity secret must not be empty")
        self._key = secret.encode("utf-8")[:32]
        self._listeners: list[IdentityListener] = []

    def on_change(self, callback: IdentityListener) -> Callable[[], None]:
        """Register a callback for auth-state transitions."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def issue_anonymous(self) -> Identity:
        return Identity(
            user_id=f"{ANONYMOUS_PREFIX}{secrets.token_urlsafe(16)}",
            is_anonymous=True,
            is_new=True,
        )

    def exchange_token(self, token: str | None) -> Identity:
        cleaned = (token or "").strip()
        if not _token_pattern.match(cleaned):
            raise AuthenticationFailure("The sign-in token was not accepted.")
        digest = blake2s(cleaned.encode("utf-8"), key=self._key, digest_size=16)
        return Identity(user_id=f"{TOKEN_PREFIX}{digest.hexdigest()}", is_anonymous=False)

    def resolve_identity(
        self,
        *,
        session_user_id: str | None = None,
        bearer_token: str | None = None,
    ) -> Identity:
        """Return the viewer identity for this request.

        A bearer token wins over the session id; a missing or malformed
        session id yields a fresh anonymous identity.
        """
        if bearer_token is not None:
            identity = self.exchange_token(bearer_token)
        elif session_user_id and _session_id_pattern.match(session_user_id):
            return Identity(
                user_id=session_user_id,
                is_anonymous=session_user_id.startswith(ANONYMOUS_PREFIX),
            )
        else:
            identity = self.issue_anonymous()

        if identity.user_id != session_user_id:
            identity = replace(identity, is_new=True)
            self._emit(session_user_id, identity)
        return identity

    def _emit(self, previous: str | None, identity: Identity) -> None:
        logger.info(
            "Viewer identity changed from %s to %s",
            previous or "<none>",
            identity.user_id,
        )
        for callback in list(self._listeners):
            callback(previous, identity)
