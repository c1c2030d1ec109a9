from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokensmith.config import Settings
from tokensmith.logging import get_logger
from tokensmith.service.errors import AuthenticationError, ConflictError
from tokensmith.service.keyring import ALGORITHM, KeyRing
from tokensmith.storage.errors import ConstraintViolation
from tokensmith.storage.models import (
    AuthenticatedUser,
    RefreshToken,
    TokenPair,
    User,
    refresh_expiry,
)
from tokensmith.storage.redis_cache import EphemeralCache

logger = get_logger(__name__)

# Memoized marker for an access token that failed verification
VERIFY_FAILED = "failed"


class CredentialStore(Protocol):
    def count_users_by_username(self, username: str) -> int: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(self, username: str, password_hash: str) -> User: ...

    def create_refresh_token(
        self, user_id: str, value: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_usable_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def claim_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, value: str) -> Optional[RefreshToken]: ...


class AuthService:
    """Registration, login, refresh-token rotation and access-token verification.

    Holds no per-request state. Collaborators are passed in by reference: the
    key ring signs and resolves verification keys, the store persists users
    and refresh tokens, and the cache carries attempt throttles and memoized
    verification outcomes.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralCache,
        keyring: KeyRing,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.keyring = keyring
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_cost, type=Type.ID
        )
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @staticmethod
    def _digest(*parts: str) -> str:
        # JSON keeps the parts unambiguous; raw credentials never reach the cache
        return hashlib.sha256(json.dumps(parts).encode()).hexdigest()

    def _attempt_key(self, action: str, username: str, password: str) -> str:
        return f"auth:{action}_attempt:{self._digest(username, password)}"

    def _verify_key(self, token: str) -> str:
        return f"auth:access_verify:{self._digest(token)}"

    # -- credentials -----------------------------------------------------------

    async def register(self, username: str, password: str) -> TokenPair:
        attempt_key = self._attempt_key("register", username, password)
        if await self.cache.get(attempt_key):
            self.logger.info("register_throttled", username=username)
            raise ConflictError(f"Username {username} is already taken")
        existing = self.store.count_users_by_username(username)
        await self.cache.set(
            attempt_key, "1", self.settings.attempt_throttle_ttl_seconds
        )
        if existing >= 1:
            raise ConflictError(f"Username {username} is already taken")

        password_hash = await asyncio.to_thread(self._hash_password, password)
        try:
            user = self.store.create_user(username, password_hash)
        except ConstraintViolation as exc:
            # A concurrent registration won the insert
            self.logger.info("register_conflict_on_insert", username=username)
            raise ConflictError(
                f"Username {username} is already taken", detail=exc.detail
            ) from exc
        self.logger.info("user_registered", user_id=user.id)
        return await self.issue_token_pair(user.id)

    async def login(self, username: str, password: str) -> TokenPair:
        attempt_key = self._attempt_key("login", username, password)
        if await self.cache.get(attempt_key):
            self.logger.info("login_throttled", username=username)
            raise AuthenticationError("Incorrect username or password")
        user = self.store.get_user_by_username(username)
        await self.cache.set(
            attempt_key, "1", self.settings.attempt_throttle_ttl_seconds
        )
        if not user:
            self.logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError("Incorrect username or password")
        matched = await asyncio.to_thread(
            self._verify_password, user.password_hash, password
        )
        if not matched:
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise AuthenticationError("Incorrect username or password")
        await self.cache.delete(attempt_key)
        self.logger.info("login_succeeded", user_id=user.id)
        return await self.issue_token_pair(user.id)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (VerifyMismatchError, InvalidHash, VerificationError):
            return False

    # -- token issuance ----------------------------------------------------------

    async def issue_token_pair(self, user_id: str) -> TokenPair:
        refresh = self._create_refresh_token(user_id)
        access_token = self.issue_access_token(user_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.value,
            refresh_expires_at=refresh.expires_at,
        )

    def _generate_refresh_value(self) -> str:
        return self.settings.refresh_token_prefix + secrets.token_hex(64)

    def _create_refresh_token(self, user_id: str) -> RefreshToken:
        expires_at = refresh_expiry(self._now(), self.settings.refresh_token_ttl_days)
        try:
            return self.store.create_refresh_token(
                user_id, self._generate_refresh_value(), expires_at
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") != "value":
                raise
            self.logger.warning("refresh_token_value_collision", user_id=user_id)
        return self.store.create_refresh_token(
            user_id, self._generate_refresh_value(), expires_at
        )

    def issue_access_token(self, user_id: str) -> str:
        key = self.keyring.select_signing_key()
        now = int(time.time())
        payload = {
            "userId": user_id,
            "iat": now,
            "exp": now + self.settings.access_token_ttl_seconds,
        }
        return jwt.encode(
            payload, key.private_key, algorithm=ALGORITHM, headers={"kid": key.kid}
        )

    # -- refresh tokens ----------------------------------------------------------

    async def rotate_access_token(self, refresh_value: str) -> str:
        """Issue a fresh access token; the refresh token row is left untouched."""
        token = self.store.get_usable_refresh_token(refresh_value, self._now())
        if not token:
            raise AuthenticationError("Invalid refresh token")
        return self.issue_access_token(token.user_id)

    async def rotate_tokens(self, refresh_value: str) -> TokenPair:
        """Revoke the presented refresh token and issue a new pair for its user.

        Revocation is a claim-if-still-usable update, so two concurrent
        rotations of the same value cannot both succeed.
        """
        token = self.store.claim_refresh_token(refresh_value, self._now())
        if not token:
            raise AuthenticationError("Refresh token is invalid, revoked, or expired.")
        self.logger.info("refresh_token_rotated", user_id=token.user_id, refresh_id=token.id)
        return await self.issue_token_pair(token.user_id)

    async def logout(self, refresh_value: str) -> RefreshToken:
        token = self.store.revoke_refresh_token(refresh_value)
        if not token:
            raise AuthenticationError("Invalid refresh token")
        self.logger.info("refresh_token_revoked", user_id=token.user_id, refresh_id=token.id)
        return token

    # -- access tokens -------------------------------------------------------------

    async def verify_access_token(
        self, token: str, force_revalidate: bool = False
    ) -> Optional[AuthenticatedUser]:
        """Resolve the user behind an access token, or ``None``.

        Never raises. Outcomes are memoized: a resolved user until the token
        itself expires, a failure for ``verify_failure_ttl_seconds``.
        """
        cache_key = self._verify_key(token)
        cached = await self._read_verification(cache_key, force_revalidate)
        if cached == VERIFY_FAILED:
            return None
        if cached is not None:
            user = self._decode_cached_user(cached)
            if user is not None:
                return user

        try:
            user_id, exp = self._decode_access_token(token)
            found = self.store.get_user(user_id)
            if not found:
                raise jwt.InvalidTokenError("user not found")
        except jwt.PyJWTError as exc:
            self.logger.info(
                "access_token_rejected", reason=str(exc), error_type=type(exc).__name__
            )
            await self._write_verification(
                cache_key, VERIFY_FAILED, self.settings.verify_failure_ttl_seconds
            )
            return None
        except Exception as exc:
            # Infrastructure failure: report unauthenticated but do not memoize it
            self.logger.error(
                "access_token_verification_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

        user = AuthenticatedUser.from_user(found)
        # Floor the remaining lifetime so the memo never outlives the token
        ttl = int(exp - time.time())
        if ttl >= 1:
            await self._write_verification(
                cache_key, json.dumps({"id": user.id, "username": user.username}), ttl
            )
        return user

    def _decode_access_token(self, token: str) -> Tuple[str, int]:
        header = jwt.get_unverified_header(token)
        # Only RS256 is accepted, whatever the token declares
        if header.get("alg") != ALGORITHM:
            raise jwt.InvalidAlgorithmError(f"unsupported alg {header.get('alg')!r}")
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise jwt.InvalidTokenError("missing kid")
        public_key = self.keyring.public_key(kid)
        if public_key is None:
            raise jwt.InvalidKeyError(f"unknown kid {kid}")
        payload = jwt.decode(
            token,
            public_key,
            algorithms=[ALGORITHM],
            options={"require": ["exp"]},
        )
        user_id = payload.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise jwt.InvalidTokenError("missing userId")
        return user_id, int(payload["exp"])

    async def _read_verification(
        self, cache_key: str, force_revalidate: bool
    ) -> Optional[str]:
        try:
            if force_revalidate:
                await self.cache.delete(cache_key)
                return None
            return await self.cache.get(cache_key)
        except Exception as exc:
            self.logger.warning("verification_cache_unavailable", error=str(exc))
            return None

    async def _write_verification(self, cache_key: str, value: str, ttl: int) -> None:
        try:
            await self.cache.set(cache_key, value, ttl)
        except Exception as exc:
            self.logger.warning("verification_cache_unavailable", error=str(exc))

    @staticmethod
    def _decode_cached_user(raw: str) -> Optional[AuthenticatedUser]:
        try:
            data = json.loads(raw)
            return AuthenticatedUser(id=str(data["id"]), username=str(data["username"]))
        except (json.JSONDecodeError, TypeError, KeyError):
            # Corrupted cache entry - treat as cache miss
            return None

    async def authenticate(self, authorization: Optional[str]) -> AuthenticatedUser:
        """Resolve a ``Bearer <token>`` authorization header to its user."""
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme != "Bearer" or not token:
            raise AuthenticationError("User not found")
        user = await self.verify_access_token(token)
        if user is None:
            raise AuthenticationError("User not found")
        return user
