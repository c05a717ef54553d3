"""
PostgreSQL credential store

Provides multi-instance deployment support for the broker:
- asyncpg connection pool
- Conditional UPDATE/DELETE ... RETURNING for single-use transitions
- TIMESTAMPTZ columns for all expiry comparisons
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import asyncpg

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
        id BIGSERIAL PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        api_key TEXT UNIQUE NOT NULL,
        token_json TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS mcp_oauth_clients (
        id BIGSERIAL PRIMARY KEY,
        client_id TEXT UNIQUE NOT NULL,
        client_secret_hash TEXT,
        client_name TEXT,
        redirect_uris JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS mcp_oauth_sessions (
        id BIGSERIAL PRIMARY KEY,
        state TEXT UNIQUE NOT NULL,
        flow TEXT NOT NULL DEFAULT 'broker',
        client_id TEXT,
        redirect_uri TEXT,
        code_challenge TEXT,
        code_challenge_method TEXT,
        mcp_state TEXT,
        auth_code_hash TEXT UNIQUE,
        user_email TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS mcp_oauth_tokens (
        id BIGSERIAL PRIMARY KEY,
        client_id TEXT NOT NULL,
        user_email TEXT NOT NULL,
        access_token_hash TEXT UNIQUE NOT NULL,
        refresh_token_hash TEXT UNIQUE NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_expires ON mcp_oauth_sessions(expires_at);
    CREATE INDEX IF NOT EXISTS idx_tokens_expires ON mcp_oauth_tokens(expires_at);
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'DELETE 3'"""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresCredentialStore(CredentialStore):
    """Credential store backed by PostgreSQL"""

    def __init__(self, connection_string: str, pool_size: int = 10):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool: Optional[asyncpg.Pool] = None

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StorageFailure("postgres store is not connected")
        return self.pool

    async def connect(self) -> None:
        """Initialize connection pool and tables"""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=60
            )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
                await self._migrate_legacy_api_keys(conn)
            logger.info("Connected to PostgreSQL credential store")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise StorageFailure(f"postgres connect failed: {e}") from e

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def _migrate_legacy_api_keys(self, conn: asyncpg.Connection) -> None:
        rows = await conn.fetch("SELECT id, api_key FROM users")
        legacy = [(row["id"], row["api_key"]) for row in rows if is_legacy_api_key(row["api_key"])]
        if not legacy:
            return
        async with conn.transaction():
            for user_id, api_key in legacy:
                await conn.execute(
                    "UPDATE users SET api_key = $1, updated_at = NOW() WHERE id = $2",
                    hash_token(api_key), user_id
                )
        logger.info(f"Migrated {len(legacy)} legacy API key(s) to hashed storage")

    async def _fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchrow(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"PostgreSQL query failed: {e}")
            raise StorageFailure(f"postgres error: {e}") from e

    async def _execute(self, query: str, *args: Any) -> int:
        try:
            async with self._require_pool().acquire() as conn:
                return _affected(await conn.execute(query, *args))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"PostgreSQL statement failed: {e}")
            raise StorageFailure(f"postgres error: {e}") from e

    # Row mapping

    def _row_to_session(self, row: asyncpg.Record) -> AuthorizationSession:
        return AuthorizationSession(
            state=row["state"],
            flow=SessionFlow(row["flow"]),
            client_id=row["client_id"],
            redirect_uri=row["redirect_uri"],
            code_challenge=row["code_challenge"],
            code_challenge_method=row["code_challenge_method"],
            client_state=row["mcp_state"],
            auth_code_hash=row["auth_code_hash"],
            subject=row["user_email"],
            expires_at=row["expires_at"],
            used=row["used"],
        )

    def _row_to_token(self, row: asyncpg.Record) -> TokenPair:
        return TokenPair(
            access_token_hash=row["access_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            client_id=row["client_id"],
            subject=row["user_email"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def _row_to_user(self, row: asyncpg.Record) -> UserRecord:
        return UserRecord(
            email=row["email"],
            api_key_hash=row["api_key"],
            token_json=row["token_json"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # Client operations

    async def create_client(self, client: OAuthClient) -> OAuthClient:
        await self._execute(
            """INSERT INTO mcp_oauth_clients
               (client_id, client_secret_hash, client_name, redirect_uris, created_at)
               VALUES ($1, $2, $3, $4::jsonb, $5)""",
            client.client_id, client.client_secret_hash, client.client_name,
            json.dumps(client.redirect_uris), client.created_at
        )
        return client

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        row = await self._fetchrow(
            "SELECT * FROM mcp_oauth_clients WHERE client_id = $1", client_id
        )
        if row is None:
            return None
        return OAuthClient(
            client_id=row["client_id"],
            client_name=row["client_name"] or "",
            client_secret_hash=row["client_secret_hash"],
            redirect_uris=json.loads(row["redirect_uris"]),
            created_at=row["created_at"],
        )

    # Session operations

    async def create_session(self, session: AuthorizationSession) -> None:
        await self._execute(
            """INSERT INTO mcp_oauth_sessions
               (state, flow, client_id, redirect_uri, code_challenge, code_challenge_method,
                mcp_state, expires_at)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8)""",
            session.state, session.flow.value, session.client_id, session.redirect_uri,
            session.code_challenge, session.code_challenge_method, session.client_state,
            session.expires_at
        )

    async def get_session(self, state: str) -> Optional[AuthorizationSession]:
        row = await self._fetchrow("SELECT * FROM mcp_oauth_sessions WHERE state = $1", state)
        return self._row_to_session(row) if row else None

    async def resolve_session(
        self, state: str, code_hash: str, subject: str, now: datetime
    ) -> bool:
        affected = await self._execute(
            """UPDATE mcp_oauth_sessions SET auth_code_hash = $1, user_email = $2
               WHERE state = $3 AND flow = 'broker' AND auth_code_hash IS NULL
                 AND NOT used AND expires_at > $4""",
            code_hash, subject, state, now
        )
        return affected == 1

    async def consume_code(self, code_hash: str, now: datetime) -> CodeRedemption:
        row = await self._fetchrow(
            """UPDATE mcp_oauth_sessions SET used = TRUE
               WHERE auth_code_hash = $1 AND flow = 'broker' AND NOT used AND expires_at > $2
               RETURNING *""",
            code_hash, now
        )
        if row is not None:
            return CodeRedemption(outcome=RedeemOutcome.OK, session=self._row_to_session(row))

        existing = await self._fetchrow(
            "SELECT flow, used FROM mcp_oauth_sessions WHERE auth_code_hash = $1", code_hash
        )
        if existing is None or existing["flow"] != SessionFlow.BROKER.value:
            return CodeRedemption(outcome=RedeemOutcome.INVALID)
        if existing["used"]:
            return CodeRedemption(outcome=RedeemOutcome.USED)
        return CodeRedemption(outcome=RedeemOutcome.EXPIRED)

    async def consume_login_state(self, state: str, now: datetime) -> bool:
        affected = await self._execute(
            """DELETE FROM mcp_oauth_sessions
               WHERE state = $1 AND flow = 'login' AND expires_at > $2""",
            state, now
        )
        return affected == 1

    async def delete_expired_sessions(self, now: datetime) -> int:
        return await self._execute("DELETE FROM mcp_oauth_sessions WHERE expires_at < $1", now)

    # Token operations

    async def create_token_pair(self, pair: TokenPair) -> None:
        await self._execute(
            """INSERT INTO mcp_oauth_tokens
               (client_id, user_email, access_token_hash, refresh_token_hash, expires_at, created_at)
               VALUES ($1, $2, $3, $4, $5, $6)""",
            pair.client_id, pair.subject, pair.access_token_hash, pair.refresh_token_hash,
            pair.expires_at, pair.created_at
        )

    async def get_token_pair(self, access_token_hash: str) -> Optional[TokenPair]:
        row = await self._fetchrow(
            "SELECT * FROM mcp_oauth_tokens WHERE access_token_hash = $1", access_token_hash
        )
        return self._row_to_token(row) if row else None

    async def rotate_token_pair(
        self,
        refresh_token_hash: str,
        client_id: str,
        new_access_token_hash: str,
        new_refresh_token_hash: str,
        expires_at: datetime,
        stale_before: datetime,
    ) -> TokenRotation:
        try:
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    deleted = await conn.fetchrow(
                        """DELETE FROM mcp_oauth_tokens
                           WHERE refresh_token_hash = $1 AND client_id = $2 AND expires_at >= $3
                           RETURNING user_email""",
                        refresh_token_hash, client_id, stale_before
                    )
                    if deleted is None:
                        existing = await conn.fetchrow(
                            """SELECT client_id FROM mcp_oauth_tokens
                               WHERE refresh_token_hash = $1 AND expires_at >= $2""",
                            refresh_token_hash, stale_before
                        )
                        if existing is not None and existing["client_id"] != client_id:
                            return TokenRotation(outcome=RotationOutcome.CLIENT_MISMATCH)
                        return TokenRotation(outcome=RotationOutcome.NOT_FOUND)

                    pair = TokenPair(
                        access_token_hash=new_access_token_hash,
                        refresh_token_hash=new_refresh_token_hash,
                        client_id=client_id,
                        subject=deleted["user_email"],
                        expires_at=expires_at,
                        created_at=datetime.now(timezone.utc),
                    )
                    await conn.execute(
                        """INSERT INTO mcp_oauth_tokens
                           (client_id, user_email, access_token_hash, refresh_token_hash,
                            expires_at, created_at)
                           VALUES ($1, $2, $3, $4, $5, $6)""",
                        pair.client_id, pair.subject, pair.access_token_hash,
                        pair.refresh_token_hash, pair.expires_at, pair.created_at
                    )
                    return TokenRotation(outcome=RotationOutcome.ROTATED, pair=pair)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"PostgreSQL token rotation failed: {e}")
            raise StorageFailure(f"postgres error: {e}") from e

    async def delete_stale_tokens(self, cutoff: datetime) -> int:
        return await self._execute("DELETE FROM mcp_oauth_tokens WHERE expires_at < $1", cutoff)

    # User operations

    async def upsert_user(self, email: str, api_key_hash: str, token_json: str) -> UserRecord:
        row = await self._fetchrow(
            """INSERT INTO users (email, api_key, token_json)
               VALUES ($1, $2, $3)
               ON CONFLICT (email) DO UPDATE SET
                   api_key = EXCLUDED.api_key,
                   token_json = EXCLUDED.token_json,
                   updated_at = NOW()
               RETURNING *""",
            email, api_key_hash, token_json
        )
        return self._row_to_user(row)

    async def update_user(self, email: str, update: UserUpdate) -> bool:
        if update.is_empty():
            return False

        assignments: List[str] = []
        params: List[Any] = []
        if update.api_key_hash is not None:
            params.append(update.api_key_hash)
            assignments.append(f"api_key = ${len(params)}")
        if update.token_json is not None:
            params.append(update.token_json)
            assignments.append(f"token_json = ${len(params)}")
        params.append(email)

        query = (
            f"UPDATE users SET {', '.join(assignments)}, updated_at = NOW() "
            f"WHERE email = ${len(params)}"
        )
        return await self._execute(query, *params) == 1

    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        row = await self._fetchrow("SELECT * FROM users WHERE email = $1", email)
        return self._row_to_user(row) if row else None

    async def get_user_by_api_key_hash(self, api_key_hash: str) -> Optional[UserRecord]:
        row = await self._fetchrow("SELECT * FROM users WHERE api_key = $1", api_key_hash)
        return self._row_to_user(row) if row else None
