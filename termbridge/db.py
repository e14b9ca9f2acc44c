"""Database initialization and repositories for the local registry.

Provides:
- Schema initialization with migrations
- MachineRepository: CRUD for machines table
- SessionRepository: CRUD for sessions table
- MessageRepository: append/list for messages table
- SqliteRegistry: the async RegistryPort over the repositories
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path

from termbridge.errors import RegistrationError
from termbridge.models import (
    MACHINE_OFFLINE,
    MACHINE_ONLINE,
    SESSION_ACTIVE,
    SESSION_ENDED,
    Machine,
    Session,
)

log = logging.getLogger("registry")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MachineRepository:
    """Repository for machines table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _row_to_machine(self, row: sqlite3.Row) -> Machine:
        return Machine(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            hostname=row["hostname"],
            status=row["status"] or MACHINE_OFFLINE,
            created_at=row["created_at"],
            last_seen_at=row["last_seen_at"],
        )

    def get(self, machine_id: str) -> Machine | None:
        row = self.conn.execute(
            "SELECT * FROM machines WHERE id = ?", (machine_id,)
        ).fetchone()
        return self._row_to_machine(row) if row else None

    def upsert(self, machine: Machine) -> Machine:
        now = _now()
        self.conn.execute(
            """INSERT INTO machines
               (id, owner_id, name, hostname, status, created_at, last_seen_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 owner_id = excluded.owner_id,
                 name = excluded.name,
                 hostname = excluded.hostname,
                 status = excluded.status,
                 last_seen_at = excluded.last_seen_at""",
            (
                machine.id,
                machine.owner_id,
                machine.name,
                machine.hostname,
                machine.status,
                machine.created_at or now,
                now,
            ),
        )
        self.conn.commit()
        stored = self.get(machine.id)
        if not stored:
            raise RegistrationError(f"Failed to load machine after upsert: {machine.id}")
        return stored

    def update_status(self, machine_id: str, status: str) -> None:
        self.conn.execute(
            "UPDATE machines SET status = ?, last_seen_at = ? WHERE id = ?",
            (status, _now(), machine_id),
        )
        self.conn.commit()

    def touch(self, machine_id: str) -> None:
        self.conn.execute(
            "UPDATE machines SET last_seen_at = ? WHERE id = ?",
            (_now(), machine_id),
        )
        self.conn.commit()


class SessionRepository:
    """Repository for sessions table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            machine_id=row["machine_id"],
            status=row["status"] or SESSION_ACTIVE,
            working_directory=row["working_directory"],
            started_at=row["started_at"],
            model=row["model"],
            resume_token=row["resume_token"],
            ended_at=row["ended_at"],
        )

    def get(self, session_id: str) -> Session | None:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    def list_active(self, machine_id: str) -> list[Session]:
        rows = self.conn.execute(
            "SELECT * FROM sessions WHERE machine_id = ? AND status != ? ORDER BY started_at DESC",
            (machine_id, SESSION_ENDED),
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def create(
        self,
        machine_id: str,
        working_directory: str | None,
        model: str | None = None,
    ) -> Session:
        session_id = str(uuid.uuid4())
        try:
            self.conn.execute(
                """INSERT INTO sessions
                   (id, machine_id, status, working_directory, model, started_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (session_id, machine_id, SESSION_ACTIVE, working_directory, model, _now()),
            )
        except sqlite3.IntegrityError as exc:
            raise RegistrationError(f"Failed to create session: {exc}") from exc
        self.conn.commit()
        created = self.get(session_id)
        if not created:
            raise RegistrationError(f"Failed to load newly created session: {session_id}")
        return created

    def end(self, session_id: str) -> bool:
        """Mark ended. Returns False if it was already ended (or missing)."""
        cur = self.conn.execute(
            "UPDATE sessions SET status = ?, ended_at = ? WHERE id = ? AND status != ?",
            (SESSION_ENDED, _now(), session_id, SESSION_ENDED),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def _update_open(self, column: str, value: str, session_id: str) -> None:
        self.conn.execute(
            f"UPDATE sessions SET {column} = ? WHERE id = ? AND status != ?",
            (value, session_id, SESSION_ENDED),
        )
        self.conn.commit()

    def update_status(self, session_id: str, status: str) -> None:
        if status == SESSION_ENDED:
            self.end(session_id)
            return
        self._update_open("status", status, session_id)

    def update_model(self, session_id: str, model: str) -> None:
        self._update_open("model", model, session_id)

    def update_resume_token(self, session_id: str, token: str) -> None:
        self._update_open("resume_token", token, session_id)


class MessageRepository:
    """Repository for messages table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def add(self, session_id: str, msg_type: str, content: str | None, seq: int) -> None:
        self.conn.execute(
            """INSERT INTO messages (session_id, type, content, seq, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (session_id, msg_type, content, seq, _now()),
        )
        self.conn.commit()

    def list_recent(self, session_id: str, limit: int = 100) -> list[tuple[int, str, str | None]]:
        """Return (seq, type, content), oldest first."""
        rows = self.conn.execute(
            """SELECT seq, type, content FROM messages
               WHERE session_id = ?
               ORDER BY id DESC
               LIMIT ?""",
            (session_id, limit),
        ).fetchall()
        return [(row["seq"], row["type"], row["content"]) for row in reversed(rows)]


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize SQLite database with schema and migrations."""
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # Pragmas: output appends are frequent while status reads happen alongside.
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.OperationalError:
        # Best-effort; some environments may reject specific pragmas.
        pass

    conn.execute("""
        CREATE TABLE IF NOT EXISTS machines (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            name TEXT NOT NULL,
            hostname TEXT NOT NULL,
            status TEXT DEFAULT 'offline',
            created_at TEXT NOT NULL,
            last_seen_at TEXT
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            machine_id TEXT NOT NULL,
            status TEXT DEFAULT 'active',
            working_directory TEXT,
            started_at TEXT NOT NULL,
            ended_at TEXT,
            FOREIGN KEY (machine_id) REFERENCES machines(id)
        )
    """)

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_machine_status ON sessions(machine_id, status)"
    )

    conn.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            type TEXT NOT NULL,
            content TEXT,
            seq INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (session_id) REFERENCES sessions(id)
        )
    """)

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id, id DESC)"
    )

    # Migrations for existing databases
    migrations = [
        ("model", "TEXT"),
        ("resume_token", "TEXT"),
    ]
    for col_name, col_type in migrations:
        try:
            conn.execute(f"ALTER TABLE sessions ADD COLUMN {col_name} {col_type}")
            conn.commit()
            log.info("Migrated sessions table: added %s", col_name)
        except sqlite3.OperationalError:
            pass

    conn.commit()
    return conn


class SqliteRegistry:
    """RegistryPort over a local SQLite file.

    Calls are synchronous and short; they run inline on the event loop like
    the rest of the bridge's SQLite access.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.machines = MachineRepository(conn)
        self.sessions = SessionRepository(conn)
        self.messages = MessageRepository(conn)

    @classmethod
    def open(cls, db_path: Path) -> "SqliteRegistry":
        return cls(init_db(db_path))

    def close(self) -> None:
        self.conn.close()

    async def upsert_machine(self, machine: Machine) -> Machine:
        try:
            return self.machines.upsert(machine)
        except sqlite3.Error as exc:
            raise RegistrationError(f"Failed to register machine: {exc}") from exc

    async def get_machine(self, machine_id: str) -> Machine | None:
        return self.machines.get(machine_id)

    async def update_machine_status(self, machine_id: str, status: str) -> None:
        if status not in (MACHINE_ONLINE, MACHINE_OFFLINE):
            raise ValueError(f"Unknown machine status: {status}")
        self.machines.update_status(machine_id, status)

    async def touch_machine(self, machine_id: str) -> None:
        self.machines.touch(machine_id)

    async def create_session(
        self, machine_id: str, working_directory: str | None, model: str | None = None
    ) -> Session:
        try:
            return self.sessions.create(machine_id, working_directory, model)
        except sqlite3.Error as exc:
            raise RegistrationError(f"Failed to create session: {exc}") from exc

    async def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    async def end_session(self, session_id: str) -> bool:
        return self.sessions.end(session_id)

    async def update_session_status(self, session_id: str, status: str) -> None:
        self.sessions.update_status(session_id, status)

    async def update_session_model(self, session_id: str, model: str) -> None:
        self.sessions.update_model(session_id, model)

    async def update_session_resume_token(self, session_id: str, token: str) -> None:
        self.sessions.update_resume_token(session_id, token)

    async def append_message(
        self, session_id: str, msg_type: str, content: str | None, seq: int
    ) -> None:
        self.messages.add(session_id, msg_type, content, seq)
