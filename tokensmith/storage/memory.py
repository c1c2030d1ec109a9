from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from tokensmith.logging import get_logger
from tokensmith.storage.errors import ConstraintViolation
from tokensmith.storage.models import RefreshToken, User, is_usable, utcnow


class MemoryStore:
    """In-process credential store for tests and local development.

    Every public method holds the data lock for its whole body, so each call
    behaves like a single database statement. Rows are copied on the way out
    so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # username -> user id, value -> token id (unique indexes)
        self._users_by_username: Dict[str, str] = {}
        self._tokens_by_value: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def count_users_by_username(self, username: str) -> int:
        with self._data_lock:
            return 1 if username in self._users_by_username else 0

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_username.get(username)
            if user_id is None:
                return None
            return replace(self.users[user_id])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def create_user(self, username: str, password_hash: str) -> User:
        with self._data_lock:
            if username in self._users_by_username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User.new(username, password_hash)
            self.users[user.id] = user
            self._users_by_username[username] = user.id
            self.logger.debug("memory_user_created", user_id=user.id)
            return replace(user)

    # -- refresh tokens --------------------------------------------------------

    def create_refresh_token(
        self, user_id: str, value: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "refresh token user missing", {"user_id": user_id}
                )
            if value in self._tokens_by_value:
                raise ConstraintViolation(
                    "refresh token value already exists", {"field": "value"}
                )
            token = RefreshToken.new(user_id, value, expires_at)
            self.refresh_tokens[token.id] = token
            self._tokens_by_value[value] = token.id
            return replace(token)

    def _token_by_value(self, value: str) -> Optional[RefreshToken]:
        token_id = self._tokens_by_value.get(value)
        return self.refresh_tokens.get(token_id) if token_id else None

    def get_usable_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self._token_by_value(value)
            if token is None or not is_usable(token, now or utcnow()):
                return None
            return replace(token)

    def claim_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Revoke the token only if it is still usable; return it when applied."""
        with self._data_lock:
            token = self._token_by_value(value)
            if token is None or not is_usable(token, now or utcnow()):
                return None
            token.revoked = True
            token.updated_at = utcnow()
            return replace(token)

    def revoke_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self._token_by_value(value)
            if token is None:
                return None
            token.revoked = True
            token.updated_at = utcnow()
            return replace(token)
