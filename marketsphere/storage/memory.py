from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Optional, Tuple

from marketsphere.logging import get_logger
from marketsphere.storage.errors import ConstraintViolation
from marketsphere.storage.models import User, utcnow


class MemoryUserStore:
    """In-process user-record store used for tests and single-node development.

    Records are copied on the way in and out so callers never hold a live
    reference; every read-modify-write happens under ``_data_lock``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()

    def _find_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        return next((u for u in self.users.values() if u.email == normalized), None)

    def _find_by_google_id(self, google_id: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.google_id == google_id), None)

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        password_hash: Optional[str] = None,
        is_verified: bool = False,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", field="email")
            if google_id and self._find_by_google_id(google_id):
                raise ConstraintViolation("google account already linked", field="google_id")
            user = User.new(
                email,
                name=name,
                role=role,
                password_hash=password_hash,
                is_verified=is_verified,
                google_id=google_id,
                avatar=avatar,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return replace(user) if user else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_google_id(google_id)
            return replace(user) if user else None

    def record_login(self, user_id: str, *, refresh_token: str) -> Optional[User]:
        """Store the newly minted refresh token and bump login bookkeeping."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            user.refresh_token = refresh_token
            user.last_login = now
            user.last_active = now
            user.login_count += 1
            return replace(user)

    def rotate_refresh_token(self, user_id: str, expected: str, new: str) -> bool:
        """Compare-and-overwrite the stored refresh token.

        Returns False when the stored token is no longer ``expected``.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.refresh_token != expected:
                return False
            user.refresh_token = new
            user.last_active = utcnow()
            return True

    def clear_refresh_token(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.refresh_token = None
            return True

    def set_suspended(self, user_id: str, suspended: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_suspended = suspended
            if suspended:
                user.refresh_token = None
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return replace(user)

    def mark_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_verified = True
            return replace(user)

    def find_or_create_oauth_user(
        self,
        *,
        email: str,
        google_id: str,
        password_hash: str,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Tuple[User, bool]:
        """Match by email, then by Google subject id, else create; atomically.

        Returns ``(user, created)``.
        """
        with self._data_lock:
            user = self._find_by_email(email) or self._find_by_google_id(google_id)
            if user:
                if not user.google_id:
                    user.google_id = google_id
                if avatar and not user.avatar:
                    user.avatar = avatar
                user.is_verified = True
                return replace(user), False
            created = self.create_user(
                email,
                name=name,
                password_hash=password_hash,
                is_verified=True,
                google_id=google_id,
                avatar=avatar,
            )
            self.logger.info("oauth_user_created", user_id=created.id)
            return created, True

    def close(self) -> None:
        return None
