"""
SQLite credential store

Single-file backend used by default:
- WAL journal with a busy timeout so concurrent writers queue instead of failing
- Thread-local connections driven from asyncio through worker threads
- BEGIN IMMEDIATE for every multi-statement write, giving one writer at a time
- Schema compatible with databases created by earlier releases
"""

import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from .auth.credentials import hash_token, is_legacy_api_key
from .auth.errors import StorageFailure
from .models import (
    AuthorizationSession, CodeRedemption, OAuthClient, RedeemOutcome,
    RotationOutcome, SessionFlow, TokenPair, TokenRotation, UserRecord, UserUpdate
)
from .store_interface import CredentialStore

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT UNIQUE NOT NULL,
        api_key TEXT UNIQUE NOT NULL,
        token_json TEXT NOT NULL,
        created_at TEXT DEFAULT (datetime('now')),
        updated_at TEXT DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS mcp_oauth_clients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id TEXT UNIQUE NOT NULL,
        client_secret_hash TEXT,
        client_name TEXT,
        redirect_uris TEXT NOT NULL,
        created_at TEXT DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS mcp_oauth_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        state TEXT UNIQUE NOT NULL,
        flow TEXT NOT NULL DEFAULT 'broker',
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL DEFAULT 'S256',
        mcp_state TEXT,
        auth_code_hash TEXT UNIQUE,
        user_email TEXT,
        expires_at TEXT NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS mcp_oauth_tokens (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id TEXT NOT NULL,
        user_email TEXT NOT NULL,
        access_token_hash TEXT UNIQUE NOT NULL,
        refresh_token_hash TEXT UNIQUE NOT NULL,
        expires_at TEXT NOT NULL,
        created_at TEXT DEFAULT (datetime('now'))
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_expires ON mcp_oauth_sessions(expires_at);
    CREATE INDEX IF NOT EXISTS idx_tokens_expires ON mcp_oauth_tokens(expires_at);
"""


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so text comparison orders correctly"""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value.replace(" ", "T"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteCredentialStore(CredentialStore):
    """Credential store backed by a local SQLite file"""

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        if db_path == ":memory:" or db_path.startswith("file::memory:"):
            raise ValueError("SQLiteCredentialStore requires a file path")
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection"""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self):
        """Write transaction holding the database write lock from the start"""
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            logger.error(f"SQLite operation {func.__name__} failed: {e}")
            raise StorageFailure(f"sqlite error: {e}") from e

    async def connect(self) -> None:
        await self._run(self._initialize)
        logger.info(f"Opened SQLite credential store at {self.db_path}")

    async def close(self) -> None:
        with self._connections_lock:
            connections, self._connections = self._connections, []
            self._local = threading.local()
        for conn in connections:
            conn.close()

    def _initialize(self) -> None:
        conn = self._get_connection()
        conn.executescript(SCHEMA)

        columns = {row["name"] for row in conn.execute("PRAGMA table_info(mcp_oauth_sessions)")}
        if "flow" not in columns:
            conn.execute(
                "ALTER TABLE mcp_oauth_sessions ADD COLUMN flow TEXT NOT NULL DEFAULT 'broker'"
            )
            logger.info("Added flow column to mcp_oauth_sessions")

        self._migrate_legacy_api_keys()

    def _migrate_legacy_api_keys(self) -> None:
        """Replace plaintext API keys left by old releases with their hashes"""
        conn = self._get_connection()
        legacy = [
            (row["id"], row["api_key"])
            for row in conn.execute("SELECT id, api_key FROM users")
            if is_legacy_api_key(row["api_key"])
        ]
        if not legacy:
            return

        now = _ts(datetime.now(timezone.utc))
        with self._transaction() as tx:
            for user_id, api_key in legacy:
                tx.execute(
                    "UPDATE users SET api_key = ?, updated_at = ? WHERE id = ?",
                    (hash_token(api_key), now, user_id)
                )
        logger.info(f"Migrated {len(legacy)} legacy API key(s) to hashed storage")

    # Row mapping

    def _row_to_client(self, row: sqlite3.Row) -> OAuthClient:
        return OAuthClient(
            client_id=row["client_id"],
            client_name=row["client_name"] or "",
            client_secret_hash=row["client_secret_hash"],
            redirect_uris=json.loads(row["redirect_uris"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def _row_to_session(self, row: sqlite3.Row) -> AuthorizationSession:
        return AuthorizationSession(
            state=row["state"],
            flow=SessionFlow(row["flow"]),
            client_id=row["client_id"] or None,
            redirect_uri=row["redirect_uri"] or None,
            code_challenge=row["code_challenge"] or None,
            code_challenge_method=row["code_challenge_method"] or None,
            client_state=row["mcp_state"],
            auth_code_hash=row["auth_code_hash"],
            subject=row["user_email"],
            expires_at=_parse_ts(row["expires_at"]),
            used=bool(row["used"]),
        )

    def _row_to_token(self, row: sqlite3.Row) -> TokenPair:
        return TokenPair(
            access_token_hash=row["access_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            client_id=row["client_id"],
            subject=row["user_email"],
            expires_at=_parse_ts(row["expires_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def _row_to_user(self, row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            email=row["email"],
            api_key_hash=row["api_key"],
            token_json=row["token_json"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # Client operations

    async def create_client(self, client: OAuthClient) -> OAuthClient:
        def _insert():
            self._get_connection().execute(
                """INSERT INTO mcp_oauth_clients
                   (client_id, client_secret_hash, client_name, redirect_uris, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (client.client_id, client.client_secret_hash, client.client_name,
                 json.dumps(client.redirect_uris), _ts(client.created_at))
            )
            return client
        return await self._run(_insert)

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        def _select():
            row = self._get_connection().execute(
                "SELECT * FROM mcp_oauth_clients WHERE client_id = ?", (client_id,)
            ).fetchone()
            return self._row_to_client(row) if row else None
        return await self._run(_select)

    # Session operations

    async def create_session(self, session: AuthorizationSession) -> None:
        def _insert():
            self._get_connection().execute(
                """INSERT INTO mcp_oauth_sessions
                   (state, flow, client_id, redirect_uri, code_challenge, code_challenge_method,
                    mcp_state, expires_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (session.state, session.flow.value, session.client_id or "",
                 session.redirect_uri or "", session.code_challenge or "",
                 session.code_challenge_method or "", session.client_state,
                 _ts(session.expires_at), _ts(datetime.now(timezone.utc)))
            )
        await self._run(_insert)

    async def get_session(self, state: str) -> Optional[AuthorizationSession]:
        def _select():
            row = self._get_connection().execute(
                "SELECT * FROM mcp_oauth_sessions WHERE state = ?", (state,)
            ).fetchone()
            return self._row_to_session(row) if row else None
        return await self._run(_select)

    async def resolve_session(
        self, state: str, code_hash: str, subject: str, now: datetime
    ) -> bool:
        def _update():
            cursor = self._get_connection().execute(
                """UPDATE mcp_oauth_sessions SET auth_code_hash = ?, user_email = ?
                   WHERE state = ? AND flow = 'broker' AND auth_code_hash IS NULL
                     AND used = 0 AND expires_at > ?""",
                (code_hash, subject, state, _ts(now))
            )
            return cursor.rowcount == 1
        return await self._run(_update)

    async def consume_code(self, code_hash: str, now: datetime) -> CodeRedemption:
        def _consume():
            with self._transaction() as conn:
                cursor = conn.execute(
                    """UPDATE mcp_oauth_sessions SET used = 1
                       WHERE auth_code_hash = ? AND flow = 'broker' AND used = 0
                         AND expires_at > ?""",
                    (code_hash, _ts(now))
                )
                consumed = cursor.rowcount == 1
                row = conn.execute(
                    "SELECT * FROM mcp_oauth_sessions WHERE auth_code_hash = ?", (code_hash,)
                ).fetchone()

            if consumed:
                return CodeRedemption(outcome=RedeemOutcome.OK, session=self._row_to_session(row))
            if row is None or row["flow"] != SessionFlow.BROKER.value:
                return CodeRedemption(outcome=RedeemOutcome.INVALID)
            if row["used"]:
                return CodeRedemption(outcome=RedeemOutcome.USED)
            return CodeRedemption(outcome=RedeemOutcome.EXPIRED)
        return await self._run(_consume)

    async def consume_login_state(self, state: str, now: datetime) -> bool:
        def _delete():
            cursor = self._get_connection().execute(
                """DELETE FROM mcp_oauth_sessions
                   WHERE state = ? AND flow = 'login' AND expires_at > ?""",
                (state, _ts(now))
            )
            return cursor.rowcount == 1
        return await self._run(_delete)

    async def delete_expired_sessions(self, now: datetime) -> int:
        def _delete():
            cursor = self._get_connection().execute(
                "DELETE FROM mcp_oauth_sessions WHERE expires_at < ?", (_ts(now),)
            )
            return cursor.rowcount
        return await self._run(_delete)

    # Token operations

    async def create_token_pair(self, pair: TokenPair) -> None:
        def _insert():
            self._insert_token(self._get_connection(), pair)
        await self._run(_insert)

    def _insert_token(self, conn: sqlite3.Connection, pair: TokenPair) -> None:
        conn.execute(
            """INSERT INTO mcp_oauth_tokens
               (client_id, user_email, access_token_hash, refresh_token_hash, expires_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (pair.client_id, pair.subject, pair.access_token_hash, pair.refresh_token_hash,
             _ts(pair.expires_at), _ts(pair.created_at))
        )

    async def get_token_pair(self, access_token_hash: str) -> Optional[TokenPair]:
        def _select():
            row = self._get_connection().execute(
                "SELECT * FROM mcp_oauth_tokens WHERE access_token_hash = ?", (access_token_hash,)
            ).fetchone()
            return self._row_to_token(row) if row else None
        return await self._run(_select)

    async def rotate_token_pair(
        self,
        refresh_token_hash: str,
        client_id: str,
        new_access_token_hash: str,
        new_refresh_token_hash: str,
        expires_at: datetime,
        stale_before: datetime,
    ) -> TokenRotation:
        def _rotate():
            with self._transaction() as conn:
                row = conn.execute(
                    """SELECT * FROM mcp_oauth_tokens
                       WHERE refresh_token_hash = ? AND expires_at >= ?""",
                    (refresh_token_hash, _ts(stale_before))
                ).fetchone()
                if row is None:
                    return TokenRotation(outcome=RotationOutcome.NOT_FOUND)
                if row["client_id"] != client_id:
                    return TokenRotation(outcome=RotationOutcome.CLIENT_MISMATCH)

                cursor = conn.execute(
                    "DELETE FROM mcp_oauth_tokens WHERE refresh_token_hash = ? AND client_id = ?",
                    (refresh_token_hash, client_id)
                )
                if cursor.rowcount != 1:
                    return TokenRotation(outcome=RotationOutcome.NOT_FOUND)

                pair = TokenPair(
                    access_token_hash=new_access_token_hash,
                    refresh_token_hash=new_refresh_token_hash,
                    client_id=client_id,
                    subject=row["user_email"],
                    expires_at=expires_at,
                    created_at=datetime.now(timezone.utc),
                )
                self._insert_token(conn, pair)
                return TokenRotation(outcome=RotationOutcome.ROTATED, pair=pair)
        return await self._run(_rotate)

    async def delete_stale_tokens(self, cutoff: datetime) -> int:
        def _delete():
            cursor = self._get_connection().execute(
                "DELETE FROM mcp_oauth_tokens WHERE expires_at < ?", (_ts(cutoff),)
            )
            return cursor.rowcount
        return await self._run(_delete)

    # User operations

    async def upsert_user(self, email: str, api_key_hash: str, token_json: str) -> UserRecord:
        def _upsert():
            now = _ts(datetime.now(timezone.utc))
            with self._transaction() as conn:
                conn.execute(
                    """INSERT INTO users (email, api_key, token_json, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(email) DO UPDATE SET
                           api_key = excluded.api_key,
                           token_json = excluded.token_json,
                           updated_at = excluded.updated_at""",
                    (email, api_key_hash, token_json, now, now)
                )
                row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            return self._row_to_user(row)
        return await self._run(_upsert)

    async def update_user(self, email: str, update: UserUpdate) -> bool:
        if update.is_empty():
            return False

        assignments = []
        params: List[Any] = []
        if update.api_key_hash is not None:
            assignments.append("api_key = ?")
            params.append(update.api_key_hash)
        if update.token_json is not None:
            assignments.append("token_json = ?")
            params.append(update.token_json)
        assignments.append("updated_at = ?")
        params.append(_ts(datetime.now(timezone.utc)))
        params.append(email)

        sql = f"UPDATE users SET {', '.join(assignments)} WHERE email = ?"

        def _update():
            return self._get_connection().execute(sql, params).rowcount == 1
        return await self._run(_update)

    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        def _select():
            row = self._get_connection().execute(
                "SELECT * FROM users WHERE email = ?", (email,)
            ).fetchone()
            return self._row_to_user(row) if row else None
        return await self._run(_select)

    async def get_user_by_api_key_hash(self, api_key_hash: str) -> Optional[UserRecord]:
        def _select():
            row = self._get_connection().execute(
                "SELECT * FROM users WHERE api_key = ?", (api_key_hash,)
            ).fetchone()
            return self._row_to_user(row) if row else None
        return await self._run(_select)
