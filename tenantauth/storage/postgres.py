from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.common import SecretCipher
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    Account,
    AccountIdentity,
    AccountScope,
    AuthSettings,
    MfaMethod,
    RefreshToken,
    RevokedAccessToken,
    RotationOutcome,
    Tenant,
    UserType,
    as_utc,
    utcnow,
)

_SYSTEM_TABLES = [
    "system_users",
    "tenants",
    "refresh_tokens",
    "revoked_tokens",
    "system_recovery_codes",
    "system_user_identities",
]


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (list, dict)):
        return value
    return json.loads(value)


class PostgresStore:
    """Postgres-backed store for system accounts and per-tenant schemas.

    System accounts, tenants and tokens live in the public schema. Tenant users,
    roles, recovery codes and linked identities live in ``tenant_<key>``; the
    schema name only ever reaches SQL as a composed identifier.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        pool: Optional[ConnectionPool] = None,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = SecretCipher(mfa_encryption_key)
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Refuse to start against a database that is missing the core tables."""

        with self._connect() as conn:
            missing_tables = []
            for table in _SYSTEM_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # ------------------------------------------------------------------
    # SQL composition
    # ------------------------------------------------------------------

    @staticmethod
    def _tenant_table(scope: AccountScope, table: str) -> sql.Composed:
        if scope.tenant_key is None:
            raise ConstraintViolation("tenant scope without tenant key", {"tenant_id": scope.tenant_id})
        return sql.SQL("{}.{}").format(
            sql.Identifier(scope.tenant_key.schema), sql.Identifier(table)
        )

    def _accounts_table(self, scope: AccountScope) -> sql.Composable:
        if scope.is_tenant:
            return self._tenant_table(scope, "users")
        return sql.Identifier("system_users")

    def _recovery_table(self, scope: AccountScope) -> sql.Composable:
        if scope.is_tenant:
            return self._tenant_table(scope, "mfa_recovery_codes")
        return sql.Identifier("system_recovery_codes")

    def _identities_table(self, scope: AccountScope) -> sql.Composable:
        if scope.is_tenant:
            return self._tenant_table(scope, "user_identities")
        return sql.Identifier("system_user_identities")

    def _account_select(self, scope: AccountScope) -> sql.Composed:
        if scope.is_tenant:
            return sql.SQL(
                "SELECT u.*, r.name AS role_name, r.permissions AS role_permissions "
                "FROM {} u LEFT JOIN {} r ON r.id = u.role_id"
            ).format(self._tenant_table(scope, "users"), self._tenant_table(scope, "roles"))
        return sql.SQL(
            "SELECT u.*, NULL AS role_name, NULL AS role_permissions FROM {} u"
        ).format(sql.Identifier("system_users"))

    def _account_from_row(self, scope: AccountScope, row: Dict[str, Any]) -> Account:
        if scope.is_tenant:
            role = row.get("role_name") or "user"
            permissions = _loads(row.get("role_permissions"), [])
        else:
            role = row.get("role") or "admin"
            permissions = _loads(row.get("permissions"), [])
        method = row.get("mfa_method")
        return Account(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            user_type=scope.user_type,
            tenant_id=scope.tenant_id,
            role=role,
            role_id=str(row["role_id"]) if row.get("role_id") else None,
            permissions=list(permissions),
            status=row.get("status", "active"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone_number=row.get("phone_number"),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_method=MfaMethod(method) if method else None,
            mfa_secret=self._mfa_cipher.decrypt(row.get("mfa_secret")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            is_locked=bool(row.get("is_locked", False)),
            locked_until=as_utc(row.get("locked_until")),
            last_login_at=as_utc(row.get("last_login_at")),
            password_history=list(_loads(row.get("password_history"), [])),
            password_changed_at=as_utc(row.get("password_changed_at")),
            reset_token_hash=row.get("reset_token_hash"),
            reset_expires_at=as_utc(row.get("reset_expires_at")),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            schema_name=row["schema_name"],
            status=row.get("status", "active"),
            auth_settings=AuthSettings.from_dict(_loads(row.get("auth_settings"), {})),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            account_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            user_type=UserType(row["user_type"]),
            expires_at=as_utc(row["expires_at"]),
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            revoked=bool(row.get("revoked", False)),
            revoked_at=as_utc(row.get("revoked_at")),
            issued_at=as_utc(row.get("issued_at")) or utcnow(),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def resolve_tenant(self, reference: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE schema_name = %s OR id::text = %s LIMIT 1",
                (reference, reference),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE id::text = %s", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, scope: AccountScope, account: Account) -> Account:
        table = self._accounts_table(scope)
        columns = [
            "id",
            "email",
            "username",
            "password_hash",
            "first_name",
            "last_name",
            "phone_number",
            "status",
            "mfa_enabled",
            "mfa_method",
            "mfa_secret",
            "password_history",
            "password_changed_at",
        ]
        values: list[Any] = [
            account.id,
            account.email,
            account.username,
            account.password_hash,
            account.first_name,
            account.last_name,
            account.phone_number,
            account.status,
            account.mfa_enabled,
            account.mfa_method.value if account.mfa_method else None,
            self._mfa_cipher.encrypt(account.mfa_secret),
            _json(list(account.password_history)),
            account.password_changed_at,
        ]
        if scope.is_tenant:
            columns.append("role_id")
            values.append(account.role_id)
        else:
            columns.extend(["role", "permissions"])
            values.extend([account.role, _json(list(account.permissions))])
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            table,
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        try:
            with self._connect() as conn:
                conn.execute(query, values)
        except errors.UniqueViolation:
            raise ConstraintViolation("account already exists", {"field": "email"})
        created = self.get_account(scope, account.id)
        if created is None:
            raise ConstraintViolation("account insert not visible", {"account_id": account.id})
        return created

    def get_account(self, scope: AccountScope, account_id: str) -> Optional[Account]:
        query = self._account_select(scope) + sql.SQL(" WHERE u.id::text = %s")
        with self._connect() as conn:
            row = conn.execute(query, (account_id,)).fetchone()
        return self._account_from_row(scope, row) if row else None

    def get_account_by_identity(
        self, scope: AccountScope, identity: str
    ) -> Optional[Account]:
        query = self._account_select(scope) + sql.SQL(
            " WHERE lower(u.email) = lower(%s) OR lower(u.username) = lower(%s) LIMIT 1"
        )
        needle = identity.strip()
        with self._connect() as conn:
            row = conn.execute(query, (needle, needle)).fetchone()
        return self._account_from_row(scope, row) if row else None

    def get_account_by_reset_token(
        self, scope: AccountScope, token_hash: str
    ) -> Optional[Account]:
        query = self._account_select(scope) + sql.SQL(" WHERE u.reset_token_hash = %s")
        with self._connect() as conn:
            row = conn.execute(query, (token_hash,)).fetchone()
        return self._account_from_row(scope, row) if row else None

    def lock_if_threshold_reached(
        self,
        scope: AccountScope,
        account_id: str,
        *,
        threshold: int,
        locked_until: datetime,
        now: datetime,
    ) -> Optional[datetime]:
        query = sql.SQL(
            """
            UPDATE {} SET failed_login_attempts = failed_login_attempts + 1,
                is_locked = TRUE,
                locked_until = COALESCE(locked_until, %s)
            WHERE id::text = %s
              AND (locked_until > %s
                   OR (locked_until IS NULL AND failed_login_attempts >= %s))
            RETURNING locked_until
            """
        ).format(self._accounts_table(scope))
        with self._connect() as conn:
            row = conn.execute(query, (locked_until, account_id, now, threshold)).fetchone()
        return as_utc(row["locked_until"]) if row else None

    def register_failed_login(
        self, scope: AccountScope, account_id: str, *, now: datetime
    ) -> int:
        query = sql.SQL(
            """
            UPDATE {} SET failed_login_attempts = failed_login_attempts + 1,
                is_locked = CASE WHEN locked_until IS NOT NULL AND locked_until <= %s
                                 THEN FALSE ELSE is_locked END,
                locked_until = CASE WHEN locked_until IS NOT NULL AND locked_until <= %s
                                    THEN NULL ELSE locked_until END
            WHERE id::text = %s
            RETURNING failed_login_attempts
            """
        ).format(self._accounts_table(scope))
        with self._connect() as conn:
            row = conn.execute(query, (now, now, account_id)).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return int(row["failed_login_attempts"])

    def register_successful_login(
        self, scope: AccountScope, account_id: str, *, now: datetime
    ) -> None:
        query = sql.SQL(
            "UPDATE {} SET failed_login_attempts = 0, is_locked = FALSE, locked_until = NULL, "
            "last_login_at = %s WHERE id::text = %s"
        ).format(self._accounts_table(scope))
        with self._connect() as conn:
            conn.execute(query, (now, account_id))

    def update_password(
        self,
        scope: AccountScope,
        account_id: str,
        password_hash: str,
        history: Sequence[str],
        *,
        changed_at: datetime,
    ) -> None:
        query = sql.SQL(
            "UPDATE {} SET password_hash = %s, password_history = %s, password_changed_at = %s, "
            "reset_token_hash = NULL, reset_expires_at = NULL WHERE id::text = %s"
        ).format(self._accounts_table(scope))
        with self._connect() as conn:
            conn.execute(query, (password_hash, _json(list(history)), changed_at, account_id))

    def set_reset_token(
        self,
        scope: AccountScope,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        query = sql.SQL(
            "UPDATE {} SET reset_token_hash = %s, reset_expires_at = %s WHERE id::text = %s"
        ).format(self._accounts_table(scope))
        with self._connect() as conn:
            conn.execute(query, (token_hash, expires_at, account_id))

    def enable_mfa(
        self,
        scope: AccountScope,
        account_id: str,
        method: MfaMethod,
        *,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> None:
        query = sql.SQL(
            "UPDATE {} SET mfa_enabled = TRUE, mfa_method = %s, mfa_secret = %s, "
            "phone_number = COALESCE(%s, phone_number) WHERE id::text = %s"
        ).format(self._accounts_table(scope))
        try:
            with self._connect() as conn:
                conn.execute(
                    query,
                    (method.value, self._mfa_cipher.encrypt(secret), phone_number, account_id),
                )
        except Exception as exc:
            self.logger.warning("enable_mfa_failed", error=str(exc))
            raise

    def disable_mfa(self, scope: AccountScope, account_id: str) -> None:
        query = sql.SQL(
            "UPDATE {} SET mfa_enabled = FALSE, mfa_method = NULL, mfa_secret = NULL"
            " WHERE id::text = %s"
        ).format(self._accounts_table(scope))
        with self._connect() as conn:
            conn.execute(query, (account_id,))

    def get_identity(
        self, scope: AccountScope, provider: str, subject: str
    ) -> Optional[AccountIdentity]:
        query = sql.SQL(
            "SELECT provider, subject, user_id, created_at FROM {} WHERE provider = %s AND subject = %s"
        ).format(self._identities_table(scope))
        with self._connect() as conn:
            row = conn.execute(query, (provider, subject)).fetchone()
        if not row:
            return None
        return AccountIdentity(
            provider=row["provider"],
            subject=row["subject"],
            account_id=str(row["user_id"]),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    def link_identity(
        self, scope: AccountScope, provider: str, subject: str, account_id: str
    ) -> None:
        query = sql.SQL(
            "INSERT INTO {} (provider, subject, user_id) VALUES (%s, %s, %s) "
            "ON CONFLICT (provider, subject) DO NOTHING"
        ).format(self._identities_table(scope))
        with self._connect() as conn:
            conn.execute(query, (provider, subject, account_id))

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _insert_refresh(self, conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_tokens (id, user_id, token_hash, user_type, tenant_id, expires_at,
                                        revoked, issued_at, ip_address, user_agent)
            VALUES (%s, %s, %s, %s, %s, %s, FALSE, %s, %s, %s)
            """,
            (
                token.id,
                token.account_id,
                token.token_hash,
                token.user_type.value,
                token.tenant_id,
                token.expires_at,
                token.issued_at,
                token.ip_address,
                token.user_agent,
            ),
        )

    def save_refresh_token(self, token: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_hash: str, replacement: RefreshToken, *, now: datetime
    ) -> RotationOutcome:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT id, revoked, expires_at FROM refresh_tokens WHERE token_hash = %s FOR UPDATE",
                (old_hash,),
            ).fetchone()
            if not row:
                return RotationOutcome(False, "missing")
            if row["revoked"]:
                return RotationOutcome(False, "revoked")
            if as_utc(row["expires_at"]) <= now:
                conn.execute(
                    "UPDATE refresh_tokens SET revoked = TRUE, revoked_at = %s WHERE id = %s",
                    (now, row["id"]),
                )
                return RotationOutcome(False, "expired")
            conn.execute(
                "UPDATE refresh_tokens SET revoked = TRUE, revoked_at = %s WHERE id = %s",
                (now, row["id"]),
            )
            self._insert_refresh(conn, replacement)
        return RotationOutcome(True)

    def revoke_refresh_tokens(
        self,
        account_id: str,
        user_type: UserType,
        tenant_id: Optional[str],
        *,
        now: datetime,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked = TRUE, revoked_at = %s
                WHERE user_id::text = %s AND user_type = %s
                  AND tenant_id IS NOT DISTINCT FROM %s AND revoked = FALSE
                """,
                (now, account_id, user_type.value, tenant_id),
            )
            return cur.rowcount or 0

    def save_revoked_access_token(self, entry: RevokedAccessToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_tokens (jti, user_id, user_type, tenant_id, reason, expires_at, revoked_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                """,
                (
                    entry.jti,
                    entry.account_id,
                    entry.user_type.value,
                    entry.tenant_id,
                    entry.reason,
                    entry.expires_at,
                    entry.revoked_at,
                ),
            )

    def get_revoked_access_token(self, jti: str) -> Optional[RevokedAccessToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM revoked_tokens WHERE jti = %s", (jti,)
            ).fetchone()
        if not row:
            return None
        return RevokedAccessToken(
            jti=row["jti"],
            account_id=str(row["user_id"]),
            user_type=UserType(row["user_type"]),
            expires_at=as_utc(row["expires_at"]),
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            reason=row.get("reason") or "user_logout",
            revoked_at=as_utc(row.get("revoked_at")) or utcnow(),
        )

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def replace_recovery_codes(
        self, scope: AccountScope, account_id: str, code_hashes: Sequence[str]
    ) -> None:
        table = self._recovery_table(scope)
        with self._connect() as conn, conn.transaction():
            conn.execute(
                sql.SQL("DELETE FROM {} WHERE user_id::text = %s").format(table),
                (account_id,),
            )
            insert = sql.SQL(
                "INSERT INTO {} (id, user_id, code_hash, used) VALUES (%s, %s, %s, FALSE)"
            ).format(table)
            for code_hash in code_hashes:
                conn.execute(insert, (str(uuid.uuid4()), account_id, code_hash))

    def consume_recovery_code(
        self, scope: AccountScope, account_id: str, code_hash: str, *, now: datetime
    ) -> bool:
        query = sql.SQL(
            """
            UPDATE {} SET used = TRUE, used_at = %s
            WHERE id = (
                SELECT id FROM {} WHERE user_id::text = %s AND code_hash = %s AND used = FALSE
                LIMIT 1 FOR UPDATE SKIP LOCKED
            ) AND used = FALSE
            RETURNING id
            """
        ).format(self._recovery_table(scope), self._recovery_table(scope))
        with self._connect() as conn:
            row = conn.execute(query, (now, account_id, code_hash)).fetchone()
        return row is not None

    def delete_recovery_codes(self, scope: AccountScope, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                sql.SQL("DELETE FROM {} WHERE user_id::text = %s").format(
                    self._recovery_table(scope)
                ),
                (account_id,),
            )

    def count_unused_recovery_codes(self, scope: AccountScope, account_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                sql.SQL(
                    "SELECT count(*) AS remaining FROM {} WHERE user_id::text = %s AND used = FALSE"
                ).format(self._recovery_table(scope)),
                (account_id,),
            ).fetchone()
        return int(row["remaining"]) if row else 0
