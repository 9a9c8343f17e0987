from __future__ import annotations

from typing import Any, Dict, Optional, Tuple, Union

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from coursegate.logging import get_logger
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import (
    CUSTOMER_TRACK,
    STAFF_TRACK,
    Customer,
    OAuthIdentity,
    Session,
    Staff,
    generate_uuid7,
    normalize_email,
    utcnow,
)

Principal = Union[Customer, Staff]

# track -> (session table, principal fk column, principal table)
_TRACK_TABLES: Dict[str, Tuple[str, str, str]] = {
    CUSTOMER_TRACK: ("sessions", "customer_id", "customers"),
    STAFF_TRACK: ("staff_sessions", "staff_id", "staff"),
}

_CUSTOMER_COLUMNS = (
    "id, email, password_hash, first_name, last_name, avatar_url, "
    "requires_password_reset, created_at"
)
_STAFF_COLUMNS = "id, email, password_hash, name, role, is_active, created_at"
_CUSTOMER_COLUMNS_JOINED = ", ".join(
    "c." + col.strip() for col in _CUSTOMER_COLUMNS.split(",")
)


def _customer_from_row(row: Dict[str, Any], prefix: str = "") -> Customer:
    return Customer(
        id=str(row[f"{prefix}id"]),
        email=row[f"{prefix}email"],
        password_hash=row.get(f"{prefix}password_hash"),
        first_name=row.get(f"{prefix}first_name"),
        last_name=row.get(f"{prefix}last_name"),
        avatar_url=row.get(f"{prefix}avatar_url"),
        requires_password_reset=bool(row.get(f"{prefix}requires_password_reset", False)),
        created_at=row.get(f"{prefix}created_at") or utcnow(),
    )


def _staff_from_row(row: Dict[str, Any], prefix: str = "") -> Staff:
    return Staff(
        id=str(row[f"{prefix}id"]),
        email=row[f"{prefix}email"],
        password_hash=row.get(f"{prefix}password_hash"),
        name=row.get(f"{prefix}name"),
        role=row.get(f"{prefix}role", "instructor"),
        is_active=bool(row.get(f"{prefix}is_active", True)),
        created_at=row.get(f"{prefix}created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed store for principals, sessions and OAuth links.

    All queries go through a shared async connection pool; each pooled
    connection commits on clean exit of ``pool.connection()`` and rolls
    back on error.
    """

    REQUIRED_TABLES = (
        "customers",
        "sessions",
        "staff",
        "staff_sessions",
        "oauth_accounts",
    )

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        connect_timeout: int = 5,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=float(connect_timeout),
            open=False,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": connect_timeout,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )

    async def open(self) -> None:
        await self.pool.open(wait=True)
        await self._verify_required_schema()

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    async def verify_connection(self) -> None:
        async with self._connect() as conn:
            await conn.execute("SELECT 1")

    async def _verify_required_schema(self) -> None:
        """Ensure the tables this store queries exist before serving requests."""

        async with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply the database migrations first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # customers
    async def create_customer(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        requires_password_reset: bool = False,
    ) -> Customer:
        customer = Customer(
            id=generate_uuid7(),
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            avatar_url=avatar_url,
            requires_password_reset=requires_password_reset,
        )
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO customers (id, email, password_hash, first_name, last_name,
                                           avatar_url, requires_password_reset, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        customer.id,
                        customer.email,
                        password_hash,
                        first_name,
                        last_name,
                        avatar_url,
                        requires_password_reset,
                        customer.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="email"
            )
        return customer

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = %s",
                (customer_id,),
            )
            row = await cur.fetchone()
        return _customer_from_row(row) if row else None

    async def get_customer_by_email(self, email: str) -> Optional[Customer]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE email = %s",
                (normalize_email(email),),
            )
            row = await cur.fetchone()
        return _customer_from_row(row) if row else None

    async def update_customer_password(self, customer_id: str, password_hash: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE customers
                SET password_hash = %s, requires_password_reset = FALSE, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, customer_id),
            )

    async def update_customer_email(self, customer_id: str, email: str) -> None:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    "UPDATE customers SET email = %s, updated_at = now() WHERE id = %s",
                    (normalize_email(email), customer_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="email"
            )

    async def set_customer_requires_password_reset(
        self, customer_id: str, required: bool = True
    ) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE customers SET requires_password_reset = %s, updated_at = now() WHERE id = %s",
                (required, customer_id),
            )

    # staff
    async def create_staff(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        name: Optional[str] = None,
        role: str = "instructor",
        is_active: bool = True,
    ) -> Staff:
        staff = Staff(
            id=generate_uuid7(),
            email=normalize_email(email),
            password_hash=password_hash,
            name=name,
            role=role,
            is_active=is_active,
        )
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO staff (id, email, password_hash, name, role, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        staff.id,
                        staff.email,
                        password_hash,
                        name,
                        role,
                        is_active,
                        staff.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="email"
            )
        return staff

    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_STAFF_COLUMNS} FROM staff WHERE id = %s", (staff_id,)
            )
            row = await cur.fetchone()
        return _staff_from_row(row) if row else None

    async def get_staff_by_email(self, email: str) -> Optional[Staff]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_STAFF_COLUMNS} FROM staff WHERE email = %s",
                (normalize_email(email),),
            )
            row = await cur.fetchone()
        return _staff_from_row(row) if row else None

    async def update_staff_password(self, staff_id: str, password_hash: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE staff SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, staff_id),
            )

    async def set_staff_active(self, staff_id: str, active: bool) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "UPDATE staff SET is_active = %s, updated_at = now() WHERE id = %s",
                (active, staff_id),
            )
            return cur.rowcount > 0

    # sessions
    @staticmethod
    def _tables(track: str) -> Tuple[sql.Identifier, sql.Identifier, sql.Identifier]:
        try:
            session_table, fk_column, principal_table = _TRACK_TABLES[track]
        except KeyError:
            raise ValueError(f"unknown session track: {track}") from None
        return (
            sql.Identifier(session_table),
            sql.Identifier(fk_column),
            sql.Identifier(principal_table),
        )

    async def create_session(self, track: str, principal_id: str) -> Session:
        session_table, fk_column, _ = self._tables(track)
        sess = Session.new(principal_id)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    sql.SQL(
                        "INSERT INTO {} (id, {}, created_at, revoked_at) VALUES (%s, %s, %s, NULL)"
                    ).format(session_table, fk_column),
                    (sess.id, principal_id, sess.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session principal missing",
                {"principal_id": principal_id},
                constraint="principal",
            )
        return sess

    async def find_active_session(
        self, track: str, session_id: str, max_age_days: int
    ) -> Optional[Tuple[Session, Principal]]:
        """Single joined lookup of an active session and its principal."""
        session_table, fk_column, principal_table = self._tables(track)
        columns = _CUSTOMER_COLUMNS if track == CUSTOMER_TRACK else _STAFF_COLUMNS
        principal_columns = sql.SQL(", ").join(
            sql.SQL("p.{} AS {}").format(
                sql.Identifier(col.strip()), sql.Identifier(f"p_{col.strip()}")
            )
            for col in columns.split(",")
        )
        query = sql.SQL(
            """
            SELECT s.id, s.{fk} AS principal_id, s.created_at, s.revoked_at, {principal_columns}
            FROM {sessions} s
            JOIN {principals} p ON s.{fk} = p.id
            WHERE s.id = %s
              AND s.revoked_at IS NULL
              AND s.created_at > now() - make_interval(days => %s)
            """
        ).format(
            fk=fk_column,
            principal_columns=principal_columns,
            sessions=session_table,
            principals=principal_table,
        )
        async with self._connect() as conn:
            cur = await conn.execute(query, (session_id, max_age_days))
            row = await cur.fetchone()
        if not row:
            return None
        sess = Session(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
        )
        if track == CUSTOMER_TRACK:
            return sess, _customer_from_row(row, prefix="p_")
        return sess, _staff_from_row(row, prefix="p_")

    async def revoke_session(self, track: str, session_id: str) -> bool:
        """Set ``revoked_at`` once; revoking an already revoked session is a no-op."""
        session_table, _, _ = self._tables(track)
        async with self._connect() as conn:
            cur = await conn.execute(
                sql.SQL(
                    "UPDATE {} SET revoked_at = now() WHERE id = %s AND revoked_at IS NULL"
                ).format(session_table),
                (session_id,),
            )
            return cur.rowcount > 0

    async def revoke_all_sessions(self, track: str, principal_id: str) -> int:
        session_table, fk_column, _ = self._tables(track)
        async with self._connect() as conn:
            cur = await conn.execute(
                sql.SQL(
                    "UPDATE {} SET revoked_at = now() WHERE {} = %s AND revoked_at IS NULL"
                ).format(session_table, fk_column),
                (principal_id,),
            )
            return max(cur.rowcount, 0)

    async def _delete_in_batches(
        self, track: str, condition: sql.Composable, params: tuple, batch_size: int
    ) -> int:
        session_table, _, _ = self._tables(track)
        query = sql.SQL(
            "DELETE FROM {table} WHERE id IN (SELECT id FROM {table} WHERE {condition} LIMIT %s)"
        ).format(table=session_table, condition=condition)
        deleted = 0
        while True:
            # One short transaction per batch keeps lock time bounded
            async with self._connect() as conn:
                cur = await conn.execute(query, (*params, batch_size))
                batch = max(cur.rowcount, 0)
            deleted += batch
            if batch < batch_size:
                return deleted

    async def cleanup_revoked_sessions(
        self, track: str, retention_days: int, batch_size: int
    ) -> int:
        return await self._delete_in_batches(
            track,
            sql.SQL(
                "revoked_at IS NOT NULL AND revoked_at < now() - make_interval(days => %s)"
            ),
            (retention_days,),
            batch_size,
        )

    async def cleanup_expired_sessions(
        self, track: str, max_age_days: int, batch_size: int
    ) -> int:
        # One day of slack past max age, revoked or not
        return await self._delete_in_batches(
            track,
            sql.SQL("created_at < now() - make_interval(days => %s)"),
            (max_age_days + 1,),
            batch_size,
        )

    # oauth
    async def find_or_create_oauth_customer(
        self, identity: OAuthIdentity
    ) -> Tuple[Customer, bool]:
        """Resolve the customer for an OAuth identity in one transaction.

        Existing link wins; otherwise an existing customer with the same email
        is linked; otherwise a password-less customer is created and linked.
        A transaction-scoped advisory lock on the email serializes concurrent
        first logins so they cannot create two customers.
        """
        email = normalize_email(identity.email)
        try:
            async with self._connect() as conn, conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))", (f"oauth:{email}",)
                )
                cur = await conn.execute(
                    f"""
                    SELECT {_CUSTOMER_COLUMNS_JOINED}
                    FROM oauth_accounts oa
                    JOIN customers c ON oa.customer_id = c.id
                    WHERE oa.provider = %s AND oa.provider_account_id = %s
                    """,
                    (identity.provider, identity.provider_account_id),
                )
                row = await cur.fetchone()
                if row:
                    return _customer_from_row(row), False

                cur = await conn.execute(
                    f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE email = %s FOR UPDATE",
                    (email,),
                )
                row = await cur.fetchone()
                is_new = row is None
                if row:
                    customer = _customer_from_row(row)
                else:
                    customer = Customer(
                        id=generate_uuid7(),
                        email=email,
                        first_name=identity.first_name,
                        last_name=identity.last_name,
                        avatar_url=identity.avatar_url,
                    )
                    await conn.execute(
                        """
                        INSERT INTO customers (id, email, password_hash, first_name, last_name,
                                               avatar_url, requires_password_reset, created_at)
                        VALUES (%s, %s, NULL, %s, %s, %s, FALSE, %s)
                        """,
                        (
                            customer.id,
                            customer.email,
                            customer.first_name,
                            customer.last_name,
                            customer.avatar_url,
                            customer.created_at,
                        ),
                    )
                await conn.execute(
                    """
                    INSERT INTO oauth_accounts (id, customer_id, provider, provider_account_id, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        generate_uuid7(),
                        customer.id,
                        identity.provider,
                        identity.provider_account_id,
                        utcnow(),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "oauth account already linked",
                {"provider": identity.provider},
                constraint="oauth_account",
            )
        self.logger.info(
            "oauth_account_linked",
            customer_id=customer.id,
            provider=identity.provider,
            is_new_customer=is_new,
        )
        return customer, is_new
