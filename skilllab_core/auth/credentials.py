# =============================================================================
# skilllab_core/auth/credentials.py
# Credential lookup and username/password login
# =============================================================================
"""
Credential lookup for trainer and admin logins.

Usernames are matched trimmed and case-insensitively, so an account created
as "Trainer4" logs in as "trainer4 " or "TRAINER4". Secrets are stored in the
``userPasswords`` cache map and, when Supabase is reachable, in the
``passwords`` table keyed by the normalized username.

New secrets are bcrypt hashes. Older plain-text secrets (the seeded default
accounts) are still accepted and compared by equality.

This module only answers "does this password belong to this user". Roles and
permissions are enforced elsewhere.
"""

from __future__ import annotations
import time
from typing import Any, Dict, Iterator, List, Mapping, Optional
import logging

import bcrypt

from skilllab_core.data.supabase_client import RemoteStoreClient
from skilllab_core.errors import (
    AuthenticationError,
    RecordNotFoundError,
    RemoteUnavailableError,
    ValidationError,
)
from skilllab_core.models.records import User, normalize_username, now_iso
from skilllab_core.offline.local_cache import LocalCacheStore, StorageKeys

logger = logging.getLogger(__name__)

BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

DEFAULT_USERS: List[Dict[str, Any]] = [
    {
        "id": "admin-1",
        "username": "admin",
        "email": "admin@skilllab.com",
        "role": "admin",
        "isActive": True,
    },
    {
        "id": "trainer-1",
        "username": "trainer1",
        "email": "trainer1@skilllab.com",
        "role": "trainer",
        "assignedGroups": ["group-1", "group-2", "group-3"],
        "assignedYears": [1, 2],
        "isActive": True,
    },
    {
        "id": "trainer-2",
        "username": "trainer2",
        "email": "trainer2@skilllab.com",
        "role": "trainer",
        "assignedGroups": ["group-4", "group-5", "group-6"],
        "assignedYears": [2, 3],
        "isActive": True,
    },
    {
        "id": "trainer-3",
        "username": "trainer3",
        "email": "trainer3@skilllab.com",
        "role": "trainer",
        "assignedGroups": ["group-7", "group-8", "group-9"],
        "assignedYears": [3, 4],
        "isActive": True,
    },
]

# ⚠️ Demo credentials - change them for any deployment
DEFAULT_PASSWORDS: Dict[str, str] = {
    "admin": "admin123",
    "trainer1": "trainer123",
    "trainer2": "trainer123",
    "trainer3": "trainer123",
}


def hash_password(password: str, rounds: int = 12) -> str:
    """
    Hash a password using bcrypt.

    Example:
        >>> hash_password("mypassword123")
        '$2b$12$...'
    """
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_secret(password: str, secret: Optional[str]) -> bool:
    """Check a password against a bcrypt hash or a legacy plain-text secret."""
    if not secret:
        return False
    if secret.startswith(BCRYPT_PREFIXES):
        try:
            return bcrypt.checkpw(password.encode(), secret.encode())
        except ValueError:
            logger.warning("Stored password hash is malformed")
            return False
    return password == secret


class CredentialIndex:
    """
    Username -> secret map with a normalized-key index.

    Lookup order: the exact key, then the normalized key, then any key whose
    normalized form matches (most recently stored wins).
    """

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._raw: Dict[str, str] = {}
        self._index: Dict[str, List[str]] = {}
        for username, secret in (secrets or {}).items():
            self.set(username, secret)

    def set(self, username: str, secret: str) -> None:
        normalized = normalize_username(username)
        self._raw[username] = secret
        keys = self._index.setdefault(normalized, [])
        if username in keys:
            keys.remove(username)
        keys.append(username)

    def remove(self, username: str) -> None:
        """Remove every key that normalizes to the same username."""
        normalized = normalize_username(username)
        for key in self._index.pop(normalized, []):
            self._raw.pop(key, None)

    def lookup(self, username: str) -> Optional[str]:
        if username in self._raw:
            return self._raw[username]
        normalized = normalize_username(username)
        if normalized in self._raw:
            return self._raw[normalized]
        keys = self._index.get(normalized)
        if keys:
            return self._raw[keys[-1]]
        return None

    def to_mapping(self) -> Dict[str, str]:
        return dict(self._raw)

    def __contains__(self, username: str) -> bool:
        return self.lookup(username) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self._raw)

    def __len__(self) -> int:
        return len(self._raw)


class AuthService:
    """
    Login and account management on top of the local cache and Supabase.

    Usage:
        auth = AuthService(cache, remote)
        try:
            user = auth.login("Trainer1 ", "trainer123")
        except AuthenticationError:
            st.error("Invalid username or password")
    """

    BCRYPT_ROUNDS = 12

    def __init__(self, cache: LocalCacheStore, remote: Optional[RemoteStoreClient] = None):
        self.cache = cache
        self.remote = remote
        self._current_user: Optional[User] = None
        self._seed_defaults()

    # =========================================================================
    # STORAGE
    # =========================================================================

    def _seed_defaults(self) -> None:
        """Add any missing default user or password; existing ones are kept."""
        users = self.cache.get(StorageKeys.USERS)
        known = {normalize_username(u.get("username", "")) for u in users}
        now = now_iso()
        added = [
            {**user, "createdAt": now}
            for user in DEFAULT_USERS
            if user["username"] not in known
        ]
        if added or not users:
            self._save_users(users + added)

        passwords = self.cache.get_mapping(StorageKeys.USER_PASSWORDS)
        missing = {k: v for k, v in DEFAULT_PASSWORDS.items() if k not in passwords}
        if missing:
            passwords.update(missing)
            if not self.cache.set_mapping(StorageKeys.USER_PASSWORDS, passwords):
                logger.warning("Could not persist default passwords")

    def _save_users(self, users: List[Dict[str, Any]]) -> None:
        if not self.cache.set(StorageKeys.USERS, users):
            logger.warning("Could not persist users to local cache")

    def _credentials(self) -> CredentialIndex:
        return CredentialIndex(self.cache.get_mapping(StorageKeys.USER_PASSWORDS))

    def _save_credentials(self, index: CredentialIndex) -> None:
        if not self.cache.set_mapping(StorageKeys.USER_PASSWORDS, index.to_mapping()):
            logger.warning("Could not persist passwords to local cache")

    def _remote_available(self) -> bool:
        return self.remote is not None and self.remote.is_available

    def _find_secret(self, username: str) -> Optional[str]:
        """Remote secret when reachable, else the cached one."""
        if self._remote_available():
            try:
                secret = self.remote.passwords.get_password(username)
                if secret:
                    return secret
            except RemoteUnavailableError as e:
                logger.warning(f"Password lookup falling back to cache: {e.message}")
        return self._credentials().lookup(username)

    def _store_secret(self, username: str, secret: str) -> None:
        index = self._credentials()
        index.remove(username)
        index.set(normalize_username(username), secret)
        self._save_credentials(index)

        if self._remote_available():
            try:
                self.remote.passwords.save_password(username, secret)
            except RemoteUnavailableError as e:
                logger.warning(f"Password saved locally only: {e.message}")

    # =========================================================================
    # USERS
    # =========================================================================

    def _user_records(self) -> List[Dict[str, Any]]:
        users = self.cache.get(StorageKeys.USERS)
        if not self._remote_available():
            return users

        try:
            remote_users = self.remote.users.fetch_all()
        except RemoteUnavailableError as e:
            logger.warning(f"Using cached users: {e.message}")
            return users

        merged = {u["id"]: u for u in users if u.get("id")}
        for user in remote_users:
            if user.get("id"):
                merged[user["id"]] = {**merged.get(user["id"], {}), **user}
        records = list(merged.values())
        self._save_users(records)
        return records

    def get_users(self) -> List[User]:
        return [User.from_dict(u) for u in self._user_records()]

    def _find_user(self, users: List[Dict[str, Any]], username: str) -> Optional[Dict[str, Any]]:
        normalized = normalize_username(username)
        for user in users:
            if normalize_username(user.get("username", "")) == normalized:
                return user
        return None

    def _push_user(self, user: Dict[str, Any]) -> None:
        if self._remote_available():
            try:
                self.remote.users.write_one(user)
            except RemoteUnavailableError as e:
                logger.warning(f"User {user['username']} saved locally only: {e.message}")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def login(self, username: str, password: str) -> User:
        """
        Authenticate a user.

        Raises:
            AuthenticationError: Unknown or inactive user, or wrong password
        """
        users = self._user_records()
        user = self._find_user(users, username)
        if user is None or not user.get("isActive", True):
            logger.info(f"Login rejected for unknown or inactive user '{username.strip()}'")
            raise AuthenticationError()

        if not verify_secret(password, self._find_secret(username)):
            logger.info(f"Login rejected for '{username.strip()}': password mismatch")
            raise AuthenticationError()

        user["lastLogin"] = now_iso()
        self._save_users(users)
        self.cache.set_item(StorageKeys.CURRENT_USER, user["id"])
        self._current_user = User.from_dict(user)
        logger.info(f"User '{user['username']}' logged in")
        return self._current_user

    def logout(self) -> None:
        self._current_user = None
        self.cache.remove(StorageKeys.CURRENT_USER)

    def get_current_user(self) -> Optional[User]:
        if self._current_user is None:
            user_id = self.cache.get_item(StorageKeys.CURRENT_USER)
            if user_id:
                match = [u for u in self.cache.get(StorageKeys.USERS) if u.get("id") == user_id]
                self._current_user = User.from_dict(match[0]) if match else None
        return self._current_user

    def create_user(self, data: Mapping[str, Any], password: str) -> User:
        """
        Create an account; the password is stored as a bcrypt hash.

        Raises:
            ValidationError: Missing username/password, or username/email taken
        """
        username = str(data.get("username") or "").strip()
        if not username:
            raise ValidationError("Username is required", field="username")
        if not password:
            raise ValidationError("Password is required", field="password")

        users = self._user_records()
        if self._find_user(users, username):
            raise ValidationError("Username already exists", field="username", actual=username)
        email = data.get("email")
        if email and any(u.get("email") == email for u in users):
            raise ValidationError("Email already exists", field="email", actual=email)

        user = {
            "role": "trainer",
            "isActive": True,
            **dict(data),
            "username": username,
            "id": f"user-{int(time.time() * 1000)}",
            "createdAt": now_iso(),
        }
        users.append(user)
        self._save_users(users)
        self._store_secret(username, hash_password(password, self.BCRYPT_ROUNDS))
        self._push_user(user)
        logger.info(f"Created user '{username}'")
        return User.from_dict(user)

    def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        """
        Raises:
            RecordNotFoundError: Unknown user id
            AuthenticationError: Current password is wrong
        """
        users = self._user_records()
        user = next((u for u in users if u.get("id") == user_id), None)
        if user is None:
            raise RecordNotFoundError("User not found", collection=StorageKeys.USERS, record_id=user_id)
        if not verify_secret(old_password, self._find_secret(user["username"])):
            raise AuthenticationError("Current password is incorrect")
        if not new_password:
            raise ValidationError("Password is required", field="password")

        self._store_secret(user["username"], hash_password(new_password, self.BCRYPT_ROUNDS))
        logger.info(f"Password changed for '{user['username']}'")

    def delete_user(self, user_id: str) -> None:
        users = self._user_records()
        user = next((u for u in users if u.get("id") == user_id), None)
        if user is None:
            raise RecordNotFoundError("User not found", collection=StorageKeys.USERS, record_id=user_id)

        self._save_users([u for u in users if u.get("id") != user_id])
        index = self._credentials()
        index.remove(user["username"])
        self._save_credentials(index)

        if self._remote_available():
            try:
                self.remote.users.delete_one(user_id)
                self.remote.passwords.delete_password(user["username"])
            except RemoteUnavailableError as e:
                logger.warning(f"User {user['username']} deleted locally only: {e.message}")

        if self._current_user is not None and self._current_user.id == user_id:
            self.logout()
        logger.info(f"Deleted user '{user['username']}'")
