from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from credvault.logging import get_logger
from credvault.service.errors import TransientStoreFailure
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import (
    TEMPORARY_TOKEN_COLUMNS,
    RefreshTokenRecord,
    User,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# unique index name -> colliding field reported to callers
_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_lower_idx": "username",
    "app_user_provider_idx": "provider_id",
    "refresh_token_digest_key": "token_digest",
}

_USER_COLUMNS = """
    id, email, username, role, login_type, provider_id, avatar_url,
    is_email_verified, is_active, last_login_at, created_at, updated_at,
    email_verification_digest, email_verification_expires_at,
    password_reset_digest, password_reset_expires_at
"""

_REFRESH_COLUMNS = """
    id, user_id, token_digest, expires_at, created_at, revoked,
    revoked_reason, revoked_at, replaced_by
"""


class PostgresStore:
    """Postgres-backed store for users, credentials and the refresh ledger.

    Every public method runs in its own transaction. Transitions that must be
    atomic (rotation, temporary-token consumption, revocation cascades) are
    expressed as conditional ``UPDATE ... RETURNING`` statements so that
    concurrent callers cannot both win.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_transient_failure", error=str(exc))
            raise TransientStoreFailure() from exc

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        required_tables = ["app_user", "user_auth_credential", "refresh_token"]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply {} to install the schema.".format(
                        ", ".join(sorted(missing_tables)), SCHEMA_PATH
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    f"citext extension is missing. Install it and reapply {SCHEMA_PATH}."
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        field = _CONSTRAINT_FIELDS.get(constraint or "", "unknown")
        return ConstraintViolation(f"{field} already exists", {"fields": [field]})

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            role=row.get("role", "user"),
            login_type=row.get("login_type", "password"),
            provider_id=row.get("provider_id"),
            avatar_url=row.get("avatar_url"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            is_active=row.get("is_active", True),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            email_verification_digest=row.get("email_verification_digest"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            password_reset_digest=row.get("password_reset_digest"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
        )

    @staticmethod
    def _row_to_refresh(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_digest=row["token_digest"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            revoked=bool(row.get("revoked", False)),
            revoked_reason=row.get("revoked_reason"),
            revoked_at=row.get("revoked_at"),
            replaced_by=str(row["replaced_by"]) if row.get("replaced_by") else None,
        )

    # -- users -------------------------------------------------------------

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        email, username, role, login_type, provider_id, avatar_url,
                        is_email_verified, is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        email.lower(),
                        username,
                        role,
                        login_type,
                        provider_id,
                        avatar_url,
                        is_email_verified,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return self._row_to_user(row)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        email, username, login_type,
                        email_verification_digest, email_verification_expires_at
                    )
                    VALUES (%s, %s, 'password', %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (email.lower(), username, verification_digest, verification_expires_at),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    """,
                    (row["id"], password_hash, password_algo),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return self._row_to_user(row)

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where}", params
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        # email is citext
        return self._fetch_user("email = %s", (email,))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("lower(username) = lower(%s)", (username,))

    def get_user_by_provider(self, login_type: str, provider_id: str) -> Optional[User]:
        return self._fetch_user(
            "login_type = %s AND provider_id = %s", (login_type, provider_id)
        )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user ORDER BY created_at DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET role = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET is_active = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (when, user_id)
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row["password_algo"] or "")

    # -- temporary tokens --------------------------------------------------

    def set_temporary_token(
        self, user_id: str, kind: str, digest: str, expires_at: datetime
    ) -> None:
        digest_col, expires_col = TEMPORARY_TOKEN_COLUMNS[kind]
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE app_user SET {digest_col} = %s, {expires_col} = %s, updated_at = now() WHERE id = %s",
                (digest, expires_at, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def find_user_by_temporary_token(
        self, kind: str, digest: str, now: datetime
    ) -> Optional[User]:
        digest_col, expires_col = TEMPORARY_TOKEN_COLUMNS[kind]
        return self._fetch_user(
            f"{digest_col} = %s AND {expires_col} > %s", (digest, now)
        )

    def consume_temporary_token(
        self,
        kind: str,
        digest: str,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]:
        """Clear a matching unexpired slot and apply its effect in one transaction."""
        digest_col, expires_col = TEMPORARY_TOKEN_COLUMNS[kind]
        verified_clause = ", is_email_verified = TRUE" if kind == "email_verification" else ""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET {digest_col} = NULL, {expires_col} = NULL, updated_at = %s{verified_clause}
                WHERE {digest_col} = %s AND {expires_col} > %s
                RETURNING {_USER_COLUMNS}
                """,
                (now, digest, now),
            ).fetchone()
            if not row:
                return None
            if kind == "password_reset" and password_hash:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = EXCLUDED.last_updated_at
                    """,
                    (row["id"], password_hash, password_algo, now),
                )
        return self._row_to_user(row)

    # -- refresh token ledger ----------------------------------------------

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_digest, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_digest,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return record

    def get_refresh_token(self, token_digest: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE token_digest = %s",
                (token_digest,),
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh(row) for row in rows]

    def rotate_refresh_token(
        self, old_digest: str, successor: RefreshTokenRecord, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        """Flip the live record to rotated and insert its successor.

        The conditional update is the arbiter between concurrent rotations:
        only one transaction sees ``revoked = FALSE``. Returns None for the
        loser.
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_reason = 'rotated', revoked_at = %s, replaced_by = %s
                    WHERE token_digest = %s AND revoked = FALSE AND expires_at > %s
                    RETURNING id
                    """,
                    (now, successor.id, old_digest, now),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_digest, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        successor.id,
                        successor.user_id,
                        successor.token_digest,
                        successor.expires_at,
                        successor.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return successor

    def revoke_refresh_token(self, token_digest: str, reason: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE token_digest = %s AND revoked = FALSE
                RETURNING id
                """,
                (reason, now, token_digest),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE user_id = %s AND revoked = FALSE
                """,
                (reason, now, user_id),
            )
            return max(cur.rowcount, 0)

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (expired_before,)
            )
            return max(cur.rowcount, 0)
