from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import ensure_utc, normalize_email, safe_row_value
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import (
    CredentialKind,
    LockoutState,
    OAuthProvider,
    RefreshToken,
    SecondaryCredential,
    User,
    UserRole,
    UserStatus,
)

_USER_COLUMNS = """
    id, uuid, email, first_name, last_name, role, status, oauth_provider,
    is_verified, created_at, updated_at, last_login_at,
    failed_login_attempts, locked_until, last_failed_login_attempt
"""


class PostgresStore:
    """Postgres-backed store for users, refresh tokens and secondary credentials."""

    backend = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "refresh_token",
            "secondary_credential",
        ]
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
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # -- row mapping ---------------------------------------------------------

    def _user_from_row(self, row: Any) -> User:
        return User(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            email=row["email"],
            first_name=safe_row_value(row, "first_name"),
            last_name=safe_row_value(row, "last_name"),
            role=UserRole(row["role"]),
            status=UserStatus(row["status"]),
            oauth_provider=OAuthProvider(safe_row_value(row, "oauth_provider", "LOCAL")),
            is_verified=bool(row["is_verified"]),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
            last_login_at=ensure_utc(safe_row_value(row, "last_login_at")),
            failed_login_attempts=int(safe_row_value(row, "failed_login_attempts", 0) or 0),
            locked_until=ensure_utc(safe_row_value(row, "locked_until")),
            last_failed_login_attempt=ensure_utc(
                safe_row_value(row, "last_failed_login_attempt")
            ),
        )

    @staticmethod
    def _refresh_from_row(row: Any) -> RefreshToken:
        return RefreshToken(
            id=int(row["id"]),
            token=row["token"],
            user_id=int(row["user_id"]),
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row["created_at"]),
            revoked=bool(row["revoked"]),
            rotated=bool(safe_row_value(row, "rotated", False)),
        )

    @staticmethod
    def _secondary_from_row(row: Any) -> SecondaryCredential:
        return SecondaryCredential(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            kind=CredentialKind(row["kind"]),
            secret=row["secret"],
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row["created_at"]),
            used=bool(row["used"]),
            attempts=int(safe_row_value(row, "attempts", 0) or 0),
        )

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
        is_verified: bool = False,
        oauth_provider: OAuthProvider = OAuthProvider.LOCAL,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (email, first_name, last_name, role, status, oauth_provider, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        normalize_email(email),
                        first_name,
                        last_name,
                        UserRole(role).value,
                        UserStatus(status).value,
                        OAuthProvider(oauth_provider).value,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_status(
        self, user_id: int, status: UserStatus, *, is_verified: Optional[bool] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET status = %s,
                    is_verified = COALESCE(%s, is_verified),
                    updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (UserStatus(status).value, is_verified, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: int, role: UserRole) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET role = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (UserRole(role).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_last_login(self, user_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s, updated_at = now() WHERE id = %s",
                (when, user_id),
            )

    def link_external_identity(
        self,
        user_id: int,
        provider: OAuthProvider,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        when: datetime,
        drop_password: bool = False,
    ) -> Optional[User]:
        """Mark the account as signed in through ``provider``; profile and status in one transaction."""
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE app_user
                SET oauth_provider = %s,
                    first_name = %s,
                    last_name = %s,
                    status = 'ACTIVE',
                    is_verified = true,
                    last_login_at = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (OAuthProvider(provider).value, first_name, last_name, when, user_id),
            ).fetchone()
            if row and drop_password:
                conn.execute(
                    "DELETE FROM user_auth_credential WHERE user_id = %s", (user_id,)
                )
        return self._user_from_row(row) if row else None

    def update_lockout_state(
        self, user_id: int, transition: Callable[[LockoutState], LockoutState]
    ) -> Optional[User]:
        """Apply a lockout transition under a row lock in one transaction."""
        with self._connect() as conn, conn.transaction():
            current = conn.execute(
                """
                SELECT failed_login_attempts, locked_until, last_failed_login_attempt
                FROM app_user WHERE id = %s FOR UPDATE
                """,
                (user_id,),
            ).fetchone()
            if not current:
                return None
            state = LockoutState(
                failed_login_attempts=int(current["failed_login_attempts"] or 0),
                locked_until=ensure_utc(current["locked_until"]),
                last_failed_login_attempt=ensure_utc(current["last_failed_login_attempt"]),
            )
            new_state = transition(state)
            row = conn.execute(
                f"""
                UPDATE app_user
                SET failed_login_attempts = %s,
                    locked_until = %s,
                    last_failed_login_attempt = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (
                    new_state.failed_login_attempts,
                    new_state.locked_until,
                    new_state.last_failed_login_attempt,
                    user_id,
                ),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
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
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row["password_algo"] or "argon2id")

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at, revoked)
                    VALUES (%s, %s, %s, false)
                    RETURNING id, token, user_id, expires_at, created_at, revoked, rotated
                    """,
                    (token, user_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._refresh_from_row(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, token, user_id, expires_at, created_at, revoked, rotated
                FROM refresh_token WHERE token = %s
                """,
                (token,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token_if_active(
        self, token: str, now: datetime
    ) -> Optional[RefreshToken]:
        """Conditional flip: only one concurrent caller can see a row returned."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = true, rotated = true
                WHERE token = %s AND revoked = false AND expires_at > %s
                RETURNING id, token, user_id, expires_at, created_at, revoked, rotated
                """,
                (token, now),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = true WHERE user_id = %s AND revoked = false",
                (user_id,),
            )
            return cur.rowcount or 0

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, token, user_id, expires_at, created_at, revoked, rotated
                FROM refresh_token WHERE user_id = %s ORDER BY id
                """,
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # -- secondary credentials ----------------------------------------------

    def create_secondary_credential(
        self,
        user_id: int,
        kind: CredentialKind,
        secret: str,
        expires_at: datetime,
    ) -> SecondaryCredential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO secondary_credential (user_id, kind, secret, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, user_id, kind, secret, expires_at, created_at, used, attempts
                    """,
                    (user_id, CredentialKind(kind).value, secret, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("credential already exists", {"field": "secret"})
        return self._secondary_from_row(row)

    def get_secondary_by_secret(
        self, secret: str, kind: CredentialKind
    ) -> Optional[SecondaryCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, kind, secret, expires_at, created_at, used, attempts
                FROM secondary_credential WHERE secret = %s AND kind = %s
                ORDER BY id DESC LIMIT 1
                """,
                (secret, CredentialKind(kind).value),
            ).fetchone()
        return self._secondary_from_row(row) if row else None

    def get_latest_secondary_for_user(
        self, user_id: int, kind: CredentialKind
    ) -> Optional[SecondaryCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, kind, secret, expires_at, created_at, used, attempts
                FROM secondary_credential WHERE user_id = %s AND kind = %s
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (user_id, CredentialKind(kind).value),
            ).fetchone()
        return self._secondary_from_row(row) if row else None

    def increment_secondary_attempts(self, credential_id: int) -> Optional[SecondaryCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE secondary_credential SET attempts = attempts + 1
                WHERE id = %s
                RETURNING id, user_id, kind, secret, expires_at, created_at, used, attempts
                """,
                (credential_id,),
            ).fetchone()
        return self._secondary_from_row(row) if row else None

    def mark_secondary_used(self, credential_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE secondary_credential SET used = true WHERE id = %s AND used = false RETURNING id",
                (credential_id,),
            ).fetchone()
        return row is not None

    def consume_verification_code(self, credential_id: int, user_id: int) -> Optional[User]:
        """Mark the code used and activate its owner in a single transaction."""
        with self._connect() as conn, conn.transaction():
            marked = conn.execute(
                """
                UPDATE secondary_credential SET used = true
                WHERE id = %s AND user_id = %s AND used = false
                RETURNING id
                """,
                (credential_id, user_id),
            ).fetchone()
            if not marked:
                return None
            row = conn.execute(
                f"""
                UPDATE app_user
                SET status = %s, is_verified = true, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (UserStatus.ACTIVE.value, user_id),
            ).fetchone()
            if not row:
                # roll back the code flip; the owner no longer exists
                raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._user_from_row(row)
