"""SQLite identity and connection store adapter.

Implements IdentityStorePort and ConnectionStorePort using SQLite with
aiosqlite for async access. Holds local profiles, organization
memberships, ChMS links, parent/student relationships, the engagement
tables write-back reads from, connection rows and the sync log.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from flocksync.core.field_mapping import normalize_phone_for_match
from flocksync.core.models import (
    ConnectionConfig,
    EngagementSummary,
    LocalProfile,
    NormalizedPerson,
    OrgRole,
    ProfileLink,
    ProfileMapping,
    Relationship,
    SyncConfig,
    SyncError,
    SyncLogEntry,
    SyncStatus,
    TriggerMethod,
)
from flocksync.core.ports import ConnectionStorePort, IdentityStorePort

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        email TEXT,
        phone_number TEXT,
        phone_digits TEXT,
        date_of_birth TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_profiles (
        profile_id TEXT PRIMARY KEY REFERENCES profiles(id) ON DELETE CASCADE,
        grade TEXT,
        address TEXT,
        city TEXT,
        state TEXT,
        zip TEXT,
        gender TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization_memberships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMP NOT NULL,
        UNIQUE (organization_id, profile_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chms_profile_links (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        external_person_id TEXT NOT NULL,
        profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        link_method TEXT NOT NULL,
        external_alias_id TEXT,
        external_guid TEXT,
        external_family_id TEXT,
        last_synced_at TIMESTAMP,
        last_write_back_at TIMESTAMP,
        UNIQUE (organization_id, provider, external_person_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS parent_student_links (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        parent_profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        student_profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        relationship TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE (parent_profile_id, student_profile_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS check_ins (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        checked_in_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sms_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        sent_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS engagement_stats (
        organization_id TEXT NOT NULL,
        profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        belonging_status TEXT,
        total_points INTEGER,
        PRIMARY KEY (organization_id, profile_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chms_connections (
        id TEXT PRIMARY KEY,
        organization_id TEXT UNIQUE NOT NULL,
        provider TEXT NOT NULL,
        base_url TEXT,
        credentials TEXT NOT NULL DEFAULT '{}',
        sync_config TEXT NOT NULL DEFAULT '{}',
        display_name TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        last_sync_at TIMESTAMP,
        last_sync_status TEXT,
        last_sync_error TEXT,
        last_sync_stats TEXT,
        verified_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chms_sync_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        sync_type TEXT NOT NULL,
        trigger_method TEXT NOT NULL,
        status TEXT NOT NULL,
        stats TEXT NOT NULL DEFAULT '{}',
        errors TEXT NOT NULL DEFAULT '[]',
        error_message TEXT,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_profiles_email ON profiles(lower(email))",
    "CREATE INDEX IF NOT EXISTS idx_profiles_phone ON profiles(phone_digits)",
    "CREATE INDEX IF NOT EXISTS idx_links_profile ON chms_profile_links(organization_id, provider, profile_id)",
    "CREATE INDEX IF NOT EXISTS idx_check_ins_profile ON check_ins(organization_id, profile_id)",
    "CREATE INDEX IF NOT EXISTS idx_sms_profile ON sms_messages(organization_id, profile_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_log_org ON chms_sync_log(organization_id, started_at)",
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteChmsStore(IdentityStorePort, ConnectionStorePort):
    """SQLite-backed identity and connection store with connection pooling."""

    def __init__(self, db_path: str, pool_size: int = 5):
        """Initialize SQLite store with connection pooling.

        Args:
            db_path: Path to SQLite database file.
            pool_size: Number of connections to maintain in the pool.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._pool_size = pool_size
        self._schema_initialized = False

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get a connection from the pool or create a new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()
        conn = await aiosqlite.connect(str(self.db_path))
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _return_connection(self, conn: aiosqlite.Connection) -> None:
        """Return a connection to the pool."""
        async with self._pool_lock:
            if len(self._pool) < self._pool_size:
                self._pool.append(conn)
                return
        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    async def _init_schema(self) -> None:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        """
        if self._schema_initialized:
            return
        async with self._schema_lock:
            if self._schema_initialized:
                return
            conn = await self._get_connection()
            try:
                for statement in _SCHEMA:
                    await conn.execute(statement)
                await conn.commit()
                self._schema_initialized = True
            finally:
                await self._return_connection(conn)

    async def _fetchone(
        self, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()
    ) -> aiosqlite.Row | None:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()
        finally:
            await self._return_connection(conn)

    async def _fetchall(
        self, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()
    ) -> list[aiosqlite.Row]:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())
        finally:
            await self._return_connection(conn)

    async def _execute(
        self, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()
    ) -> int:
        """Run one write statement and commit. Returns the affected row count."""
        await self._init_schema()
        conn = await self._get_connection()
        try:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.rowcount
        finally:
            await self._return_connection(conn)

    # ========================================================================
    # IdentityStorePort
    # ========================================================================

    async def get_links(self, organization_id: str, provider: str) -> list[ProfileLink]:
        rows = await self._fetchall(
            """
            SELECT * FROM chms_profile_links
            WHERE organization_id = ? AND provider = ?
            ORDER BY id
            """,
            (organization_id, provider),
        )
        return [self._row_to_link(row) for row in rows]

    async def get_link(
        self, organization_id: str, provider: str, external_person_id: str
    ) -> ProfileLink | None:
        row = await self._fetchone(
            """
            SELECT * FROM chms_profile_links
            WHERE organization_id = ? AND provider = ? AND external_person_id = ?
            """,
            (organization_id, provider, external_person_id),
        )
        return self._row_to_link(row) if row else None

    async def get_link_for_profile(
        self, organization_id: str, provider: str, profile_id: str
    ) -> ProfileLink | None:
        row = await self._fetchone(
            """
            SELECT * FROM chms_profile_links
            WHERE organization_id = ? AND provider = ? AND profile_id = ?
            """,
            (organization_id, provider, profile_id),
        )
        return self._row_to_link(row) if row else None

    async def find_profile_by_email(
        self, organization_id: str, email: str
    ) -> LocalProfile | None:
        row = await self._fetchone(
            """
            SELECT p.* FROM profiles p
            JOIN organization_memberships m ON m.profile_id = p.id
            WHERE m.organization_id = ? AND lower(trim(p.email)) = ?
            ORDER BY p.created_at
            LIMIT 1
            """,
            (organization_id, email),
        )
        return self._row_to_profile(row) if row else None

    async def find_profile_by_phone(
        self, organization_id: str, phone: str
    ) -> LocalProfile | None:
        row = await self._fetchone(
            """
            SELECT p.* FROM profiles p
            JOIN organization_memberships m ON m.profile_id = p.id
            WHERE m.organization_id = ? AND p.phone_digits = ?
            ORDER BY p.created_at
            LIMIT 1
            """,
            (organization_id, phone),
        )
        return self._row_to_profile(row) if row else None

    async def create_link(self, link: ProfileLink) -> None:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            await self._insert_link(conn, link)
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise ValueError(
                f"External person {link.external_person_id} is already linked"
            ) from e
        finally:
            await self._return_connection(conn)

    async def create_linked_profile(
        self,
        organization_id: str,
        provider: str,
        person: NormalizedPerson,
        mapping: ProfileMapping,
        org_role: OrgRole,
    ) -> str:
        """Insert profile, membership, student profile and link in one transaction."""
        await self._init_schema()
        profile_id = str(uuid.uuid4())
        now = _now()
        conn = await self._get_connection()
        try:
            await self._insert_profile(conn, profile_id, mapping, now)
            await conn.execute(
                """
                INSERT INTO organization_memberships
                (organization_id, profile_id, role, status, created_at)
                VALUES (?, ?, ?, 'active', ?)
                """,
                (organization_id, profile_id, org_role, _ts(now)),
            )
            if org_role == "student":
                student = mapping.student
                await conn.execute(
                    """
                    INSERT INTO student_profiles
                    (profile_id, grade, address, city, state, zip, gender)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        profile_id,
                        student.grade,
                        student.address,
                        student.city,
                        student.state,
                        student.zip,
                        student.gender,
                    ),
                )
            await self._insert_link(
                conn,
                ProfileLink(
                    organization_id=organization_id,
                    provider=provider,
                    external_person_id=person.external_id,
                    profile_id=profile_id,
                    link_method="auto_created",
                    external_alias_id=person.external_alias_id,
                    external_guid=person.external_guid,
                    external_family_id=person.family_id,
                    last_synced_at=now,
                ),
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
        finally:
            await self._return_connection(conn)
        return profile_id

    async def update_profile(self, profile_id: str, mapping: ProfileMapping) -> None:
        """Refresh profile columns; names always, other fields only when present."""
        profile = mapping.profile
        await self._init_schema()
        conn = await self._get_connection()
        try:
            await conn.execute(
                """
                UPDATE profiles SET
                    first_name = ?,
                    last_name = ?,
                    email = COALESCE(?, email),
                    phone_number = COALESCE(?, phone_number),
                    phone_digits = COALESCE(?, phone_digits),
                    date_of_birth = COALESCE(?, date_of_birth)
                WHERE id = ?
                """,
                (
                    profile.first_name,
                    profile.last_name,
                    profile.email,
                    profile.phone_number,
                    normalize_phone_for_match(profile.phone_number)
                    if profile.phone_number
                    else None,
                    profile.date_of_birth,
                    profile_id,
                ),
            )
            student = mapping.student.non_empty()
            if student:
                assignments = ", ".join(f"{column} = ?" for column in student)
                await conn.execute(
                    f"UPDATE student_profiles SET {assignments} WHERE profile_id = ?",
                    (*student.values(), profile_id),
                )
            await conn.commit()
        finally:
            await self._return_connection(conn)

    async def touch_link(
        self,
        organization_id: str,
        provider: str,
        external_person_id: str,
        synced_at: datetime,
        external_alias_id: str | None = None,
        external_guid: str | None = None,
    ) -> None:
        await self._execute(
            """
            UPDATE chms_profile_links SET
                last_synced_at = ?,
                external_alias_id = COALESCE(?, external_alias_id),
                external_guid = COALESCE(?, external_guid)
            WHERE organization_id = ? AND provider = ? AND external_person_id = ?
            """,
            (
                _ts(synced_at),
                external_alias_id,
                external_guid,
                organization_id,
                provider,
                external_person_id,
            ),
        )

    async def set_link_family(
        self,
        organization_id: str,
        provider: str,
        external_person_id: str,
        external_family_id: str,
    ) -> None:
        await self._execute(
            """
            UPDATE chms_profile_links SET external_family_id = ?
            WHERE organization_id = ? AND provider = ? AND external_person_id = ?
            """,
            (external_family_id, organization_id, provider, external_person_id),
        )

    async def relationship_exists(
        self, parent_profile_id: str, student_profile_id: str
    ) -> bool:
        row = await self._fetchone(
            """
            SELECT 1 FROM parent_student_links
            WHERE parent_profile_id = ? AND student_profile_id = ?
            """,
            (parent_profile_id, student_profile_id),
        )
        return row is not None

    async def create_relationship(
        self,
        parent_profile_id: str,
        student_profile_id: str,
        relationship: Relationship,
    ) -> None:
        await self._execute(
            """
            INSERT OR IGNORE INTO parent_student_links
            (parent_profile_id, student_profile_id, relationship, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (parent_profile_id, student_profile_id, relationship, _ts(_now())),
        )

    async def get_engagement_summary(
        self, organization_id: str, profile_id: str
    ) -> EngagementSummary | None:
        row = await self._fetchone(
            """
            SELECT
                (SELECT MAX(checked_in_at) FROM check_ins
                 WHERE organization_id = :org AND profile_id = :pid) AS last_check_in,
                (SELECT COUNT(*) FROM check_ins
                 WHERE organization_id = :org AND profile_id = :pid) AS total_check_ins,
                (SELECT MAX(sent_at) FROM sms_messages
                 WHERE organization_id = :org AND profile_id = :pid) AS last_text,
                e.belonging_status,
                e.total_points,
                e.profile_id IS NOT NULL AS has_stats
            FROM (SELECT 1)
            LEFT JOIN engagement_stats e
                ON e.organization_id = :org AND e.profile_id = :pid
            """,
            {"org": organization_id, "pid": profile_id},
        )
        if row is None:
            return None
        if not row["has_stats"] and not row["total_check_ins"] and not row["last_text"]:
            return None
        return EngagementSummary(
            profile_id=profile_id,
            last_check_in=_parse_ts(row["last_check_in"]),
            last_text=_parse_ts(row["last_text"]),
            belonging_status=row["belonging_status"],
            total_points=row["total_points"],
            total_check_ins=row["total_check_ins"] or None,
        )

    async def mark_written_back(
        self,
        organization_id: str,
        provider: str,
        external_person_ids: Iterable[str],
        written_at: datetime,
    ) -> None:
        ids = list(external_person_ids)
        if not ids:
            return
        placeholders = ", ".join("?" for _ in ids)
        await self._execute(
            f"""
            UPDATE chms_profile_links SET last_write_back_at = ?
            WHERE organization_id = ? AND provider = ?
              AND external_person_id IN ({placeholders})
            """,
            (_ts(written_at), organization_id, provider, *ids),
        )

    # ========================================================================
    # ConnectionStorePort
    # ========================================================================

    async def get_connection(self, organization_id: str) -> ConnectionConfig | None:
        row = await self._fetchone(
            "SELECT * FROM chms_connections WHERE organization_id = ? AND is_active = 1",
            (organization_id,),
        )
        return self._row_to_connection(row) if row else None

    async def list_active_connections(self) -> list[ConnectionConfig]:
        rows = await self._fetchall(
            "SELECT * FROM chms_connections WHERE is_active = 1 ORDER BY organization_id"
        )
        return [self._row_to_connection(row) for row in rows]

    async def save_connection(self, connection: ConnectionConfig) -> str:
        connection_id = connection.id or str(uuid.uuid4())
        await self._execute(
            """
            INSERT INTO chms_connections
            (id, organization_id, provider, base_url, credentials, sync_config,
             display_name, is_active, last_sync_at, last_sync_status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(organization_id) DO UPDATE SET
                provider = excluded.provider,
                base_url = excluded.base_url,
                credentials = excluded.credentials,
                sync_config = excluded.sync_config,
                display_name = excluded.display_name,
                is_active = excluded.is_active
            """,
            (
                connection_id,
                connection.organization_id,
                connection.provider,
                connection.base_url,
                json.dumps(dict(connection.credentials)),
                json.dumps(connection.sync_config.to_mapping()),
                connection.display_name,
                1 if connection.is_active else 0,
                _ts(connection.last_sync_at),
                connection.last_sync_status,
            ),
        )
        row = await self._fetchone(
            "SELECT id FROM chms_connections WHERE organization_id = ?",
            (connection.organization_id,),
        )
        return row["id"] if row else connection_id

    async def update_sync_status(
        self,
        organization_id: str,
        status: SyncStatus,
        synced_at: datetime,
        error: str | None,
        stats: dict[str, int],
    ) -> None:
        await self._execute(
            """
            UPDATE chms_connections SET
                last_sync_at = CASE WHEN :status = 'error'
                    THEN last_sync_at ELSE :synced_at END,
                last_sync_status = :status,
                last_sync_error = :error,
                last_sync_stats = :stats
            WHERE organization_id = :organization_id
            """,
            {
                "synced_at": _ts(synced_at),
                "status": status,
                "error": error,
                "stats": json.dumps(stats),
                "organization_id": organization_id,
            },
        )

    async def save_sync_cursor(self, organization_id: str, cursor: datetime) -> None:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            result = await conn.execute(
                "SELECT sync_config FROM chms_connections WHERE organization_id = ?",
                (organization_id,),
            )
            row = await result.fetchone()
            if row is None:
                return
            config = json.loads(row["sync_config"] or "{}")
            config["last_incremental_sync_at"] = _ts(cursor)
            await conn.execute(
                "UPDATE chms_connections SET sync_config = ? WHERE organization_id = ?",
                (json.dumps(config), organization_id),
            )
            await conn.commit()
        finally:
            await self._return_connection(conn)

    async def mark_verified(self, organization_id: str, verified_at: datetime) -> None:
        await self._execute(
            "UPDATE chms_connections SET verified_at = ? WHERE organization_id = ?",
            (_ts(verified_at), organization_id),
        )

    async def record_sync_log(self, entry: SyncLogEntry) -> None:
        await self._execute(
            """
            INSERT INTO chms_sync_log
            (organization_id, provider, sync_type, trigger_method, status, stats,
             errors, error_message, started_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.organization_id,
                entry.provider,
                entry.sync_type,
                entry.trigger_method.value,
                entry.status,
                json.dumps(dict(entry.stats)),
                json.dumps(
                    [{"external_id": e.external_id, "error": e.error} for e in entry.errors]
                ),
                entry.error_message,
                _ts(entry.started_at),
                _ts(entry.completed_at),
            ),
        )

    async def get_sync_logs(self, organization_id: str, limit: int = 20) -> list[SyncLogEntry]:
        """Return the most recent sync-log rows for an organization, newest first."""
        rows = await self._fetchall(
            """
            SELECT * FROM chms_sync_log
            WHERE organization_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (organization_id, limit),
        )
        return [
            SyncLogEntry(
                organization_id=row["organization_id"],
                provider=row["provider"],
                sync_type=row["sync_type"],
                trigger_method=TriggerMethod(row["trigger_method"]),
                status=row["status"],
                stats=json.loads(row["stats"]),
                errors=tuple(SyncError(**e) for e in json.loads(row["errors"])),
                started_at=datetime.fromisoformat(row["started_at"]),
                completed_at=datetime.fromisoformat(row["completed_at"]),
                error_message=row["error_message"],
            )
            for row in rows
        ]

    # ========================================================================
    # Local data writers (owned by the wider application)
    # ========================================================================

    async def add_member(
        self,
        organization_id: str,
        first_name: str,
        last_name: str,
        email: str | None = None,
        phone_number: str | None = None,
        role: OrgRole = "student",
    ) -> str:
        """Create a local profile with an organization membership."""
        await self._init_schema()
        profile_id = str(uuid.uuid4())
        now = _now()
        conn = await self._get_connection()
        try:
            await conn.execute(
                """
                INSERT INTO profiles
                (id, first_name, last_name, email, phone_number, phone_digits,
                 date_of_birth, created_at)
                VALUES (?, ?, ?, ?, ?, ?, NULL, ?)
                """,
                (
                    profile_id,
                    first_name,
                    last_name,
                    email,
                    phone_number,
                    normalize_phone_for_match(phone_number) if phone_number else None,
                    _ts(now),
                ),
            )
            await conn.execute(
                """
                INSERT INTO organization_memberships
                (organization_id, profile_id, role, status, created_at)
                VALUES (?, ?, ?, 'active', ?)
                """,
                (organization_id, profile_id, role, _ts(now)),
            )
            await conn.commit()
        finally:
            await self._return_connection(conn)
        return profile_id

    async def record_check_in(
        self, organization_id: str, profile_id: str, checked_in_at: datetime
    ) -> None:
        await self._execute(
            "INSERT INTO check_ins (organization_id, profile_id, checked_in_at) VALUES (?, ?, ?)",
            (organization_id, profile_id, _ts(checked_in_at)),
        )

    async def record_text(
        self, organization_id: str, profile_id: str, sent_at: datetime
    ) -> None:
        await self._execute(
            "INSERT INTO sms_messages (organization_id, profile_id, sent_at) VALUES (?, ?, ?)",
            (organization_id, profile_id, _ts(sent_at)),
        )

    async def set_engagement_stats(
        self,
        organization_id: str,
        profile_id: str,
        belonging_status: str | None,
        total_points: int | None,
    ) -> None:
        await self._execute(
            """
            INSERT INTO engagement_stats (organization_id, profile_id, belonging_status, total_points)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(organization_id, profile_id) DO UPDATE SET
                belonging_status = excluded.belonging_status,
                total_points = excluded.total_points
            """,
            (organization_id, profile_id, belonging_status, total_points),
        )

    async def count_profiles(self, organization_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM organization_memberships WHERE organization_id = ?",
            (organization_id,),
        )
        return int(row["n"]) if row else 0

    async def has_student_profile(self, profile_id: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM student_profiles WHERE profile_id = ?", (profile_id,)
        )
        return row is not None

    # ========================================================================
    # Row mapping
    # ========================================================================

    async def _insert_profile(
        self,
        conn: aiosqlite.Connection,
        profile_id: str,
        mapping: ProfileMapping,
        created_at: datetime,
    ) -> None:
        profile = mapping.profile
        await conn.execute(
            """
            INSERT INTO profiles
            (id, first_name, last_name, email, phone_number, phone_digits,
             date_of_birth, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                profile_id,
                profile.first_name,
                profile.last_name,
                profile.email,
                profile.phone_number,
                normalize_phone_for_match(profile.phone_number)
                if profile.phone_number
                else None,
                profile.date_of_birth,
                _ts(created_at),
            ),
        )

    async def _insert_link(self, conn: aiosqlite.Connection, link: ProfileLink) -> None:
        await conn.execute(
            """
            INSERT INTO chms_profile_links
            (organization_id, provider, external_person_id, profile_id, link_method,
             external_alias_id, external_guid, external_family_id, last_synced_at,
             last_write_back_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                link.organization_id,
                link.provider,
                link.external_person_id,
                link.profile_id,
                link.link_method,
                link.external_alias_id,
                link.external_guid,
                link.external_family_id,
                _ts(link.last_synced_at),
                _ts(link.last_write_back_at),
            ),
        )

    @staticmethod
    def _row_to_link(row: aiosqlite.Row) -> ProfileLink:
        return ProfileLink(
            organization_id=row["organization_id"],
            provider=row["provider"],
            external_person_id=row["external_person_id"],
            profile_id=row["profile_id"],
            link_method=row["link_method"],
            external_alias_id=row["external_alias_id"],
            external_guid=row["external_guid"],
            external_family_id=row["external_family_id"],
            last_synced_at=_parse_ts(row["last_synced_at"]),
            last_write_back_at=_parse_ts(row["last_write_back_at"]),
        )

    @staticmethod
    def _row_to_profile(row: aiosqlite.Row) -> LocalProfile:
        return LocalProfile(
            id=row["id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone_number=row["phone_number"],
            date_of_birth=row["date_of_birth"],
        )

    @staticmethod
    def _row_to_connection(row: aiosqlite.Row) -> ConnectionConfig:
        return ConnectionConfig(
            id=row["id"],
            organization_id=row["organization_id"],
            provider=row["provider"],
            base_url=row["base_url"],
            credentials=json.loads(row["credentials"] or "{}"),
            sync_config=SyncConfig.from_mapping(json.loads(row["sync_config"] or "{}")),
            display_name=row["display_name"],
            is_active=bool(row["is_active"]),
            last_sync_at=_parse_ts(row["last_sync_at"]),
            last_sync_status=row["last_sync_status"],
        )
