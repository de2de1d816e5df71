"""Session establishment against an identity provider.

A session signs in once: with the bootstrap token when one is configured,
otherwise anonymously. The resulting identity is stable for the lifetime
of the session. A failed sign-in is terminal; the session is never retried.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import secrets
import uuid
from typing import Protocol

import asyncpg

logger = logging.getLogger(__name__)

IDENTITY_SCHEMA = """
CREATE TABLE IF NOT EXISTS identities (
    uid TEXT PRIMARY KEY,
    anonymous BOOLEAN NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS identity_tokens (
    token_hash TEXT PRIMARY KEY,
    uid TEXT NOT NULL REFERENCES identities(uid) ON DELETE CASCADE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


class AuthError(Exception):
    """Raised when a session cannot be authenticated."""


class SessionStatus(enum.StrEnum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def make_token() -> str:
    return secrets.token_urlsafe(32)


class IdentityProvider(Protocol):
    """Protocol for identity providers."""

    async def open(self) -> None: ...

    async def sign_in_with_token(self, token: str) -> str:
        """Return the identity bound to *token*.

        Raises:
            AuthError: If the token is unknown
        """
        ...

    async def sign_in_anonymously(self) -> str:
        """Issue a fresh anonymous identity."""
        ...


class MemoryIdentityProvider:
    """Process-local identity provider for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}
        self.identities: dict[str, bool] = {}

    async def open(self) -> None:
        return None

    async def issue_token(self, uid: str | None = None) -> tuple[str, str]:
        """Create (or reuse) a non-anonymous identity and a token for it."""
        uid = uid or uuid.uuid4().hex
        self.identities.setdefault(uid, False)
        token = make_token()
        self._tokens[hash_token(token)] = uid
        return uid, token

    async def sign_in_with_token(self, token: str) -> str:
        uid = self._tokens.get(hash_token(token))
        if uid is None:
            raise AuthError("Invalid token")
        return uid

    async def sign_in_anonymously(self) -> str:
        uid = uuid.uuid4().hex
        self.identities[uid] = True
        return uid


class PostgresIdentityProvider:
    """Identity provider storing identities and hashed tokens in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def open(self) -> None:
        await self._pool.execute(IDENTITY_SCHEMA)

    async def issue_token(self, uid: str | None = None) -> tuple[str, str]:
        """Create (or reuse) a non-anonymous identity and a token for it.

        Only the SHA-256 hash of the token is stored; the plain token is
        returned once and cannot be recovered.
        """
        uid = uid or uuid.uuid4().hex
        token = make_token()
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO identities (uid, anonymous) VALUES ($1, false) "
                    "ON CONFLICT (uid) DO NOTHING",
                    uid,
                )
                await conn.execute(
                    "INSERT INTO identity_tokens (token_hash, uid) VALUES ($1, $2)",
                    hash_token(token),
                    uid,
                )
        logger.info("Issued token for identity %s", uid)
        return uid, token

    async def sign_in_with_token(self, token: str) -> str:
        uid = await self._pool.fetchval(
            "SELECT uid FROM identity_tokens WHERE token_hash = $1",
            hash_token(token),
        )
        if uid is None:
            raise AuthError("Invalid token")
        return uid

    async def sign_in_anonymously(self) -> str:
        uid = uuid.uuid4().hex
        await self._pool.execute(
            "INSERT INTO identities (uid, anonymous) VALUES ($1, true)",
            uid,
        )
        return uid


class SessionManager:
    """Single-shot transition from pending to ready(identity) or failed(reason)."""

    def __init__(self, provider: IdentityProvider, token: str | None = None) -> None:
        self._provider = provider
        self._token = token
        self.status = SessionStatus.PENDING
        self.identity: str | None = None
        self.failure: str | None = None

    async def start(self) -> str:
        """Authenticate and return the session identity.

        Calling again after success returns the same identity; calling
        again after failure raises without contacting the provider.

        Raises:
            AuthError: If authentication fails (now or previously)
        """
        if self.status is SessionStatus.READY:
            assert self.identity is not None
            return self.identity
        if self.status is SessionStatus.FAILED:
            raise AuthError(self.failure or "Authentication failed")

        try:
            if self._token:
                identity = await self._provider.sign_in_with_token(self._token)
            else:
                identity = await self._provider.sign_in_anonymously()
        except Exception as exc:
            self.status = SessionStatus.FAILED
            self.failure = str(exc) or type(exc).__name__
            logger.error("Authentication failed: %s", self.failure)
            raise AuthError(self.failure) from exc

        self.identity = identity
        self.status = SessionStatus.READY
        logger.info("Session ready for identity %s", identity)
        return identity
