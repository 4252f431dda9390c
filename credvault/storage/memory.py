from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from credvault.logging import get_logger
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import (
    TEMPORARY_TOKEN_COLUMNS,
    RefreshTokenRecord,
    User,
    UserAuthCredential,
    utcnow,
)


class MemoryStore:
    """Dict-backed store for tests and single-process development.

    All read-modify-write sequences run under one ``RLock`` so the conditional
    transitions (token rotation, temporary token consumption) behave like the
    single-statement updates of the Postgres store. State is snapshotted to
    ``fs_root/state/credential_store.json`` after every mutation.
    """

    def __init__(self, fs_root: str = "/tmp/credvault") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        # keyed by token digest
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can be called while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path()

    # -- users -------------------------------------------------------------

    def _find_collisions(
        self,
        email: str,
        username: Optional[str],
        login_type: str,
        provider_id: Optional[str],
    ) -> List[str]:
        fields: List[str] = []
        lowered_email = email.lower()
        lowered_username = username.lower() if username else None
        for existing in self.users.values():
            if existing.email.lower() == lowered_email and "email" not in fields:
                fields.append("email")
            if (
                lowered_username
                and existing.username
                and existing.username.lower() == lowered_username
                and "username" not in fields
            ):
                fields.append("username")
            if (
                provider_id
                and existing.login_type == login_type
                and existing.provider_id == provider_id
                and "provider_id" not in fields
            ):
                fields.append("provider_id")
        return fields

    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        role: str = "user",
        login_type: str = "password",
        provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
        is_email_verified: bool = False,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            collisions = self._find_collisions(email, username, login_type, provider_id)
            if collisions:
                raise ConstraintViolation(
                    f"{', '.join(collisions)} already exists", {"fields": collisions}
                )
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email.lower(),
                username=username,
                role=role,
                login_type=login_type,
                provider_id=provider_id,
                avatar_url=avatar_url,
                is_email_verified=is_email_verified,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def create_password_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        password_algo: str,
        *,
        verification_digest: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
    ) -> User:
        """Insert a password account, its credential and its verification slot together."""
        with self._data_lock:
            collisions = self._find_collisions(email, username, "password", None)
            if collisions:
                raise ConstraintViolation(
                    f"{', '.join(collisions)} already exists", {"fields": collisions}
                )
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email.lower(),
                username=username,
                created_at=now,
                updated_at=now,
                email_verification_digest=verification_digest,
                email_verification_expires_at=verification_expires_at,
            )
            self.users[user.id] = user
            self.credentials[user.id] = UserAuthCredential(
                user_id=user.id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=now,
                last_updated_at=now,
            )
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email.lower() == lowered), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.username and u.username.lower() == lowered
                ),
                None,
            )
            return replace(user) if user else None

    def get_user_by_provider(self, login_type: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.login_type == login_type and u.provider_id == provider_id
                ),
                None,
            )
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in results[:limit]]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = when
            self._persist_state()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            now = utcnow()
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else now,
                last_updated_at=now,
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            if not record or not record.password_hash:
                return None
            return record.password_hash, record.password_algo or ""

    # -- temporary tokens --------------------------------------------------

    def set_temporary_token(
        self, user_id: str, kind: str, digest: str, expires_at: datetime
    ) -> None:
        digest_attr, expires_attr = TEMPORARY_TOKEN_COLUMNS[kind]
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            setattr(user, digest_attr, digest)
            setattr(user, expires_attr, expires_at)
            self._persist_state()

    def _match_temporary_token(self, kind: str, digest: str, now: datetime) -> Optional[User]:
        digest_attr, expires_attr = TEMPORARY_TOKEN_COLUMNS[kind]
        for user in self.users.values():
            if getattr(user, digest_attr) != digest:
                continue
            expires_at = getattr(user, expires_attr)
            if expires_at is not None and expires_at > now:
                return user
            return None
        return None

    def find_user_by_temporary_token(
        self, kind: str, digest: str, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self._match_temporary_token(kind, digest, now)
            return replace(user) if user else None

    def consume_temporary_token(
        self,
        kind: str,
        digest: str,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]:
        """Clear a matching unexpired slot and apply its effect in one step."""
        digest_attr, expires_attr = TEMPORARY_TOKEN_COLUMNS[kind]
        with self._data_lock:
            user = self._match_temporary_token(kind, digest, now)
            if not user:
                return None
            setattr(user, digest_attr, None)
            setattr(user, expires_attr, None)
            if kind == "email_verification":
                user.is_email_verified = True
            elif kind == "password_reset" and password_hash:
                existing = self.credentials.get(user.id)
                self.credentials[user.id] = UserAuthCredential(
                    user_id=user.id,
                    password_hash=password_hash,
                    password_algo=password_algo,
                    created_at=existing.created_at if existing else now,
                    last_updated_at=now,
                )
            user.updated_at = now
            self._persist_state()
            return replace(user)

    # -- refresh token ledger ----------------------------------------------

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.token_digest in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token digest already exists", {"fields": ["token_digest"]}
                )
            self.refresh_tokens[record.token_digest] = replace(record)
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token_digest: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_digest)
            return replace(record) if record else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [r for r in self.refresh_tokens.values() if r.user_id == user_id]
            return [replace(r) for r in sorted(records, key=lambda r: r.created_at)]

    def rotate_refresh_token(
        self, old_digest: str, successor: RefreshTokenRecord, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        """Mark ``old_digest`` rotated and insert ``successor`` atomically.

        Returns None when the old record is no longer live and unexpired,
        meaning another caller already rotated or revoked it.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(old_digest)
            if current is None or current.revoked or current.expires_at <= now:
                return None
            if successor.token_digest in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token digest already exists", {"fields": ["token_digest"]}
                )
            current.revoked = True
            current.revoked_reason = "rotated"
            current.revoked_at = now
            current.replaced_by = successor.id
            self.refresh_tokens[successor.token_digest] = replace(successor)
            self._persist_state()
            return replace(successor)

    def revoke_refresh_token(self, token_digest: str, reason: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_digest)
            if record is None or record.revoked:
                return False
            record.revoked = True
            record.revoked_reason = reason
            record.revoked_at = now
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    record.revoked_reason = reason
                    record.revoked_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._data_lock:
            stale = [
                digest
                for digest, record in self.refresh_tokens.items()
                if record.expires_at <= expired_before
            ]
            for digest in stale:
                self.refresh_tokens.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": cred.user_id,
                    "password_hash": cred.password_hash,
                    "password_algo": cred.password_algo,
                    "created_at": self._serialize_datetime(cred.created_at),
                    "last_updated_at": self._serialize_datetime(cred.last_updated_at),
                }
                for cred in self.credentials.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_unreadable", error=str(exc), path=str(path))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: UserAuthCredential(
                user_id=entry["user_id"],
                password_hash=entry.get("password_hash"),
                password_algo=entry.get("password_algo"),
                created_at=self._deserialize_datetime(entry.get("created_at")) or utcnow(),
                last_updated_at=self._deserialize_datetime(entry.get("last_updated_at")),
            )
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["token_digest"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "login_type": user.login_type,
            "provider_id": user.provider_id,
            "avatar_url": user.avatar_url,
            "is_email_verified": user.is_email_verified,
            "is_active": user.is_active,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "email_verification_digest": user.email_verification_digest,
            "email_verification_expires_at": self._serialize_datetime(
                user.email_verification_expires_at
            ),
            "password_reset_digest": user.password_reset_digest,
            "password_reset_expires_at": self._serialize_datetime(
                user.password_reset_expires_at
            ),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data.get("username"),
            role=data.get("role", "user"),
            login_type=data.get("login_type", "password"),
            provider_id=data.get("provider_id"),
            avatar_url=data.get("avatar_url"),
            is_email_verified=data.get("is_email_verified", False),
            is_active=data.get("is_active", True),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            email_verification_digest=data.get("email_verification_digest"),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            password_reset_digest=data.get("password_reset_digest"),
            password_reset_expires_at=self._deserialize_datetime(
                data.get("password_reset_expires_at")
            ),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_digest": record.token_digest,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "revoked": record.revoked,
            "revoked_reason": record.revoked_reason,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "replaced_by": record.replaced_by,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_digest=data["token_digest"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            revoked=data.get("revoked", False),
            revoked_reason=data.get("revoked_reason"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by=data.get("replaced_by"),
        )
