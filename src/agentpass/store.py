"""
SQLite persistence for agents, tokens, transactions, step-ups, grants and
webhooks.

Every mutation that must be atomic runs inside ``Store.transaction()``,
which opens a ``BEGIN IMMEDIATE`` transaction so check-then-write sequences
are serialized across threads and processes.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .models import (
    AccessTokenRecord,
    Agent,
    AgentStatus,
    ApprovalType,
    CodeGrant,
    CodeGrantStatus,
    DeliveryLog,
    DeviceGrant,
    DeviceGrantStatus,
    NotificationRecord,
    OAuthClient,
    PaymentMethod,
    SpendingLimits,
    StepUpRequest,
    StepUpStatus,
    Transaction,
    TransactionStatus,
    TriggerType,
    WebhookSubscription,
)
from .storage import ensure_private_dir, ensure_private_file


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        client_id TEXT NOT NULL UNIQUE,
        client_secret_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        permissions TEXT NOT NULL,
        per_transaction_limit_cents INTEGER NOT NULL,
        daily_limit_cents INTEGER NOT NULL,
        monthly_limit_cents INTEGER NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL,
        last_used_at INTEGER,
        secret_rotated_at INTEGER,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agents_owner ON agents (owner_id)",
    """
    CREATE TABLE IF NOT EXISTS access_tokens (
        token_hash TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        scope TEXT,
        expires_at INTEGER NOT NULL,
        revoked_at INTEGER,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_access_tokens_agent ON access_tokens (agent_id)",
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        amount_cents INTEGER NOT NULL,
        currency TEXT NOT NULL,
        merchant_id TEXT NOT NULL,
        merchant_name TEXT,
        status TEXT NOT NULL,
        approval_type TEXT NOT NULL,
        step_up_request_id TEXT,
        payment_method_id TEXT,
        daily_period_start INTEGER NOT NULL,
        monthly_period_start INTEGER NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_transactions_usage
    ON transactions (agent_id, status, daily_period_start, monthly_period_start)
    """,
    """
    CREATE TABLE IF NOT EXISTS step_up_requests (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        amount_cents INTEGER NOT NULL,
        currency TEXT NOT NULL,
        merchant_id TEXT NOT NULL,
        merchant_name TEXT,
        items TEXT NOT NULL,
        reason TEXT NOT NULL,
        trigger_type TEXT NOT NULL,
        status TEXT NOT NULL,
        requested_payment_method_id TEXT,
        approved_payment_method_id TEXT,
        rejection_reason TEXT,
        expires_at INTEGER NOT NULL,
        created_at INTEGER NOT NULL,
        responded_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_step_up_owner ON step_up_requests (owner_id, status)",
    """
    CREATE TABLE IF NOT EXISTS payment_methods (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        label TEXT NOT NULL,
        is_default INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device_grants (
        id TEXT PRIMARY KEY,
        user_code TEXT NOT NULL UNIQUE,
        agent_name TEXT NOT NULL,
        agent_description TEXT,
        requested_permissions TEXT NOT NULL,
        requested_limits TEXT NOT NULL,
        granted_permissions TEXT,
        granted_limits TEXT,
        status TEXT NOT NULL,
        user_id TEXT,
        agent_id TEXT,
        rejection_reason TEXT,
        expires_at INTEGER NOT NULL,
        credentials_issued_at INTEGER,
        created_at INTEGER NOT NULL,
        responded_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS code_grants (
        id TEXT PRIMARY KEY,
        code TEXT UNIQUE,
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        state TEXT,
        scope TEXT,
        status TEXT NOT NULL,
        user_id TEXT,
        expires_at INTEGER NOT NULL,
        approved_at INTEGER,
        used_at INTEGER,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_clients (
        client_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        redirect_uris TEXT NOT NULL,
        permissions TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_subscriptions (
        id TEXT PRIMARY KEY,
        merchant_id TEXT NOT NULL UNIQUE,
        url TEXT NOT NULL,
        secret TEXT NOT NULL,
        events TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_delivery_logs (
        id TEXT PRIMARY KEY,
        webhook_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        status_code INTEGER,
        response_body TEXT,
        error TEXT,
        duration_ms INTEGER NOT NULL,
        attempted_at INTEGER NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_delivery_logs_webhook
    ON webhook_delivery_logs (webhook_id, attempted_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        source_id TEXT,
        status TEXT NOT NULL,
        error TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notification_source ON notification_logs (source_id, type)",
    """
    CREATE TABLE IF NOT EXISTS provider_credentials (
        provider TEXT PRIMARY KEY,
        refresh_token TEXT NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
)


def _dump_set(values) -> str:
    return json.dumps(sorted(values))


def _load_set(raw: Optional[str]) -> Optional[frozenset[str]]:
    if raw is None:
        return None
    return frozenset(json.loads(raw))


def _dump_limits(limits: Optional[SpendingLimits]) -> Optional[str]:
    if limits is None:
        return None
    return json.dumps({
        "per_transaction_cents": limits.per_transaction_cents,
        "daily_cents": limits.daily_cents,
        "monthly_cents": limits.monthly_cents,
        "currency": limits.currency,
    })


def _load_limits(raw: Optional[str]) -> Optional[SpendingLimits]:
    if raw is None:
        return None
    return SpendingLimits(**json.loads(raw))


class Store:
    """
    SQLite-backed persistence.

    Read and write helpers accept an optional connection so that several of
    them can be composed inside one ``transaction()`` block.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_private_dir(self.db_path.parent)
        ensure_private_file(self.db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            for statement in _SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; roll back on any exception."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _reading(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = self._connect()
        try:
            yield own
        finally:
            own.close()

    @contextmanager
    def _writing(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    # Agents

    def _row_to_agent(self, row: sqlite3.Row) -> Agent:
        return Agent(
            id=row["id"],
            owner_id=row["owner_id"],
            client_id=row["client_id"],
            client_secret_hash=row["client_secret_hash"],
            name=row["name"],
            description=row["description"],
            permissions=_load_set(row["permissions"]) or frozenset(),
            per_transaction_limit_cents=row["per_transaction_limit_cents"],
            daily_limit_cents=row["daily_limit_cents"],
            monthly_limit_cents=row["monthly_limit_cents"],
            currency=row["currency"],
            status=AgentStatus(row["status"]),
            last_used_at=row["last_used_at"],
            secret_rotated_at=row["secret_rotated_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_agent(self, agent: Agent, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                INSERT INTO agents (
                    id, owner_id, client_id, client_secret_hash, name, description,
                    permissions, per_transaction_limit_cents, daily_limit_cents,
                    monthly_limit_cents, currency, status, last_used_at,
                    secret_rotated_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    agent.id,
                    agent.owner_id,
                    agent.client_id,
                    agent.client_secret_hash,
                    agent.name,
                    agent.description,
                    _dump_set(agent.permissions),
                    agent.per_transaction_limit_cents,
                    agent.daily_limit_cents,
                    agent.monthly_limit_cents,
                    agent.currency,
                    agent.status.value,
                    agent.last_used_at,
                    agent.secret_rotated_at,
                    agent.created_at,
                    agent.updated_at,
                ),
            )

    def update_agent(self, agent: Agent, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                UPDATE agents SET
                    client_secret_hash = ?, name = ?, description = ?, permissions = ?,
                    per_transaction_limit_cents = ?, daily_limit_cents = ?,
                    monthly_limit_cents = ?, currency = ?, status = ?,
                    last_used_at = ?, secret_rotated_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    agent.client_secret_hash,
                    agent.name,
                    agent.description,
                    _dump_set(agent.permissions),
                    agent.per_transaction_limit_cents,
                    agent.daily_limit_cents,
                    agent.monthly_limit_cents,
                    agent.currency,
                    agent.status.value,
                    agent.last_used_at,
                    agent.secret_rotated_at,
                    agent.updated_at,
                    agent.id,
                ),
            )

    def get_agent(self, agent_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Agent]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return self._row_to_agent(row) if row else None

    def get_agent_by_client_id(
        self, client_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Agent]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM agents WHERE client_id = ?", (client_id,)).fetchone()
        return self._row_to_agent(row) if row else None

    def list_agents(self, owner_id: str) -> list[Agent]:
        with self._reading(None) as c:
            rows = c.execute(
                "SELECT * FROM agents WHERE owner_id = ? ORDER BY created_at DESC, id",
                (owner_id,),
            ).fetchall()
        return [self._row_to_agent(row) for row in rows]

    def touch_agent(self, agent_id: str, now: int, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute("UPDATE agents SET last_used_at = ? WHERE id = ?", (now, agent_id))

    # Access tokens

    def insert_token(self, record: AccessTokenRecord, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                INSERT INTO access_tokens (token_hash, agent_id, scope, expires_at, revoked_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.token_hash,
                    record.agent_id,
                    record.scope,
                    record.expires_at,
                    record.revoked_at,
                    record.created_at,
                ),
            )

    def get_token(self, token_hash: str) -> Optional[AccessTokenRecord]:
        with self._reading(None) as c:
            row = c.execute(
                "SELECT * FROM access_tokens WHERE token_hash = ?", (token_hash,)
            ).fetchone()
        if row is None:
            return None
        return AccessTokenRecord(
            token_hash=row["token_hash"],
            agent_id=row["agent_id"],
            scope=row["scope"],
            expires_at=row["expires_at"],
            revoked_at=row["revoked_at"],
            created_at=row["created_at"],
        )

    def revoke_token(self, token_hash: str, now: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Set revoked_at once; returns False when already revoked or untracked."""
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE access_tokens SET revoked_at = ? WHERE token_hash = ? AND revoked_at IS NULL",
                (now, token_hash),
            )
        return cursor.rowcount > 0

    def revoke_agent_tokens(
        self, agent_id: str, now: int, conn: Optional[sqlite3.Connection] = None
    ) -> list[str]:
        """Revoke every live token of an agent; returns the digests that changed."""
        with self._writing(conn) as c:
            rows = c.execute(
                "SELECT token_hash FROM access_tokens WHERE agent_id = ? AND revoked_at IS NULL",
                (agent_id,),
            ).fetchall()
            c.execute(
                "UPDATE access_tokens SET revoked_at = ? WHERE agent_id = ? AND revoked_at IS NULL",
                (now, agent_id),
            )
        return [row["token_hash"] for row in rows]

    def count_active_tokens(self, agent_id: str, now: int) -> int:
        with self._reading(None) as c:
            row = c.execute(
                """
                SELECT COUNT(*) AS n FROM access_tokens
                WHERE agent_id = ? AND revoked_at IS NULL AND expires_at > ?
                """,
                (agent_id, now),
            ).fetchone()
        return row["n"]

    # Transactions

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            agent_id=row["agent_id"],
            amount_cents=row["amount_cents"],
            currency=row["currency"],
            merchant_id=row["merchant_id"],
            merchant_name=row["merchant_name"],
            status=TransactionStatus(row["status"]),
            approval_type=ApprovalType(row["approval_type"]),
            step_up_request_id=row["step_up_request_id"],
            payment_method_id=row["payment_method_id"],
            daily_period_start=row["daily_period_start"],
            monthly_period_start=row["monthly_period_start"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_transaction(self, tx: Transaction, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                INSERT INTO transactions (
                    id, agent_id, amount_cents, currency, merchant_id, merchant_name,
                    status, approval_type, step_up_request_id, payment_method_id,
                    daily_period_start, monthly_period_start, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tx.id,
                    tx.agent_id,
                    tx.amount_cents,
                    tx.currency,
                    tx.merchant_id,
                    tx.merchant_name,
                    tx.status.value,
                    tx.approval_type.value,
                    tx.step_up_request_id,
                    tx.payment_method_id,
                    tx.daily_period_start,
                    tx.monthly_period_start,
                    tx.created_at,
                    tx.updated_at,
                ),
            )

    def get_transaction(self, tx_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Transaction]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM transactions WHERE id = ?", (tx_id,)).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transaction_for_step_up(self, step_up_id: str) -> Optional[Transaction]:
        with self._reading(None) as c:
            row = c.execute(
                "SELECT * FROM transactions WHERE step_up_request_id = ?", (step_up_id,)
            ).fetchone()
        return self._row_to_transaction(row) if row else None

    def update_transaction_status(
        self,
        tx_id: str,
        status: TransactionStatus,
        now: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self._writing(conn) as c:
            c.execute(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, now, tx_id),
            )

    def list_transactions(self, agent_id: str, limit: int = 50) -> list[Transaction]:
        with self._reading(None) as c:
            rows = c.execute(
                "SELECT * FROM transactions WHERE agent_id = ? ORDER BY created_at DESC, id LIMIT ?",
                (agent_id, limit),
            ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def sum_completed(
        self,
        agent_id: str,
        daily_since: int,
        monthly_since: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> tuple[int, int]:
        """Sum completed spend by snapshotted period start; returns (daily, monthly) cents."""
        with self._reading(conn) as c:
            row = c.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN daily_period_start >= ? THEN amount_cents END), 0) AS daily,
                    COALESCE(SUM(CASE WHEN monthly_period_start >= ? THEN amount_cents END), 0) AS monthly
                FROM transactions
                WHERE agent_id = ? AND status = ?
                """,
                (daily_since, monthly_since, agent_id, TransactionStatus.COMPLETED.value),
            ).fetchone()
        return int(row["daily"]), int(row["monthly"])

    # Step-up requests

    def _row_to_step_up(self, row: sqlite3.Row) -> StepUpRequest:
        return StepUpRequest(
            id=row["id"],
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            amount_cents=row["amount_cents"],
            currency=row["currency"],
            merchant_id=row["merchant_id"],
            merchant_name=row["merchant_name"],
            items=json.loads(row["items"]),
            reason=row["reason"],
            trigger_type=TriggerType(row["trigger_type"]),
            status=StepUpStatus(row["status"]),
            requested_payment_method_id=row["requested_payment_method_id"],
            approved_payment_method_id=row["approved_payment_method_id"],
            rejection_reason=row["rejection_reason"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            responded_at=row["responded_at"],
        )

    def insert_step_up(self, step_up: StepUpRequest, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                INSERT INTO step_up_requests (
                    id, agent_id, owner_id, amount_cents, currency, merchant_id,
                    merchant_name, items, reason, trigger_type, status,
                    requested_payment_method_id, approved_payment_method_id,
                    rejection_reason, expires_at, created_at, responded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step_up.id,
                    step_up.agent_id,
                    step_up.owner_id,
                    step_up.amount_cents,
                    step_up.currency,
                    step_up.merchant_id,
                    step_up.merchant_name,
                    json.dumps(step_up.items),
                    step_up.reason,
                    step_up.trigger_type.value,
                    step_up.status.value,
                    step_up.requested_payment_method_id,
                    step_up.approved_payment_method_id,
                    step_up.rejection_reason,
                    step_up.expires_at,
                    step_up.created_at,
                    step_up.responded_at,
                ),
            )

    def get_step_up(self, step_up_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[StepUpRequest]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM step_up_requests WHERE id = ?", (step_up_id,)).fetchone()
        return self._row_to_step_up(row) if row else None

    def update_step_up(self, step_up: StepUpRequest, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                UPDATE step_up_requests SET
                    status = ?, approved_payment_method_id = ?, rejection_reason = ?,
                    responded_at = ?
                WHERE id = ?
                """,
                (
                    step_up.status.value,
                    step_up.approved_payment_method_id,
                    step_up.rejection_reason,
                    step_up.responded_at,
                    step_up.id,
                ),
            )

    def list_pending_step_ups(self, owner_id: str, now: int) -> list[StepUpRequest]:
        with self._reading(None) as c:
            rows = c.execute(
                """
                SELECT * FROM step_up_requests
                WHERE owner_id = ? AND status = ? AND expires_at >= ?
                ORDER BY created_at DESC, id
                """,
                (owner_id, StepUpStatus.PENDING.value, now),
            ).fetchall()
        return [self._row_to_step_up(row) for row in rows]

    # Payment methods

    def _row_to_payment_method(self, row: sqlite3.Row) -> PaymentMethod:
        return PaymentMethod(
            id=row["id"],
            owner_id=row["owner_id"],
            label=row["label"],
            is_default=bool(row["is_default"]),
            created_at=row["created_at"],
        )

    def insert_payment_method(self, method: PaymentMethod) -> None:
        with self.transaction() as c:
            if method.is_default:
                c.execute(
                    "UPDATE payment_methods SET is_default = 0 WHERE owner_id = ?",
                    (method.owner_id,),
                )
            c.execute(
                """
                INSERT INTO payment_methods (id, owner_id, label, is_default, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (method.id, method.owner_id, method.label, int(method.is_default), method.created_at),
            )

    def get_payment_method(
        self, method_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[PaymentMethod]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM payment_methods WHERE id = ?", (method_id,)).fetchone()
        return self._row_to_payment_method(row) if row else None

    def get_default_payment_method(self, owner_id: str) -> Optional[PaymentMethod]:
        with self._reading(None) as c:
            row = c.execute(
                """
                SELECT * FROM payment_methods WHERE owner_id = ?
                ORDER BY is_default DESC, created_at ASC LIMIT 1
                """,
                (owner_id,),
            ).fetchone()
        return self._row_to_payment_method(row) if row else None

    # Device grants

    def _row_to_device_grant(self, row: sqlite3.Row) -> DeviceGrant:
        return DeviceGrant(
            id=row["id"],
            user_code=row["user_code"],
            agent_name=row["agent_name"],
            agent_description=row["agent_description"],
            requested_permissions=_load_set(row["requested_permissions"]) or frozenset(),
            requested_limits=_load_limits(row["requested_limits"]),
            granted_permissions=_load_set(row["granted_permissions"]),
            granted_limits=_load_limits(row["granted_limits"]),
            status=DeviceGrantStatus(row["status"]),
            user_id=row["user_id"],
            agent_id=row["agent_id"],
            rejection_reason=row["rejection_reason"],
            expires_at=row["expires_at"],
            credentials_issued_at=row["credentials_issued_at"],
            created_at=row["created_at"],
            responded_at=row["responded_at"],
        )

    def insert_device_grant(self, grant: DeviceGrant, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                INSERT INTO device_grants (
                    id, user_code, agent_name, agent_description, requested_permissions,
                    requested_limits, granted_permissions, granted_limits, status,
                    user_id, agent_id, rejection_reason, expires_at,
                    credentials_issued_at, created_at, responded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grant.id,
                    grant.user_code,
                    grant.agent_name,
                    grant.agent_description,
                    _dump_set(grant.requested_permissions),
                    _dump_limits(grant.requested_limits),
                    _dump_set(grant.granted_permissions) if grant.granted_permissions is not None else None,
                    _dump_limits(grant.granted_limits),
                    grant.status.value,
                    grant.user_id,
                    grant.agent_id,
                    grant.rejection_reason,
                    grant.expires_at,
                    grant.credentials_issued_at,
                    grant.created_at,
                    grant.responded_at,
                ),
            )

    def update_device_grant(self, grant: DeviceGrant, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                UPDATE device_grants SET
                    granted_permissions = ?, granted_limits = ?, status = ?, user_id = ?,
                    agent_id = ?, rejection_reason = ?, credentials_issued_at = ?,
                    responded_at = ?
                WHERE id = ?
                """,
                (
                    _dump_set(grant.granted_permissions) if grant.granted_permissions is not None else None,
                    _dump_limits(grant.granted_limits),
                    grant.status.value,
                    grant.user_id,
                    grant.agent_id,
                    grant.rejection_reason,
                    grant.credentials_issued_at,
                    grant.responded_at,
                    grant.id,
                ),
            )

    def get_device_grant(self, grant_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[DeviceGrant]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM device_grants WHERE id = ?", (grant_id,)).fetchone()
        return self._row_to_device_grant(row) if row else None

    def get_device_grant_by_user_code(
        self, user_code: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[DeviceGrant]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM device_grants WHERE user_code = ?", (user_code,)).fetchone()
        return self._row_to_device_grant(row) if row else None

    # Authorization code grants

    def _row_to_code_grant(self, row: sqlite3.Row) -> CodeGrant:
        return CodeGrant(
            id=row["id"],
            code=row["code"],
            client_id=row["client_id"],
            redirect_uri=row["redirect_uri"],
            code_challenge=row["code_challenge"],
            code_challenge_method=row["code_challenge_method"],
            state=row["state"],
            scope=row["scope"],
            status=CodeGrantStatus(row["status"]),
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            approved_at=row["approved_at"],
            used_at=row["used_at"],
            created_at=row["created_at"],
        )

    def insert_code_grant(self, grant: CodeGrant, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                INSERT INTO code_grants (
                    id, code, client_id, redirect_uri, code_challenge, code_challenge_method,
                    state, scope, status, user_id, expires_at, approved_at, used_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grant.id,
                    grant.code,
                    grant.client_id,
                    grant.redirect_uri,
                    grant.code_challenge,
                    grant.code_challenge_method,
                    grant.state,
                    grant.scope,
                    grant.status.value,
                    grant.user_id,
                    grant.expires_at,
                    grant.approved_at,
                    grant.used_at,
                    grant.created_at,
                ),
            )

    def update_code_grant(self, grant: CodeGrant, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                """
                UPDATE code_grants SET
                    code = ?, status = ?, user_id = ?, approved_at = ?, used_at = ?
                WHERE id = ?
                """,
                (grant.code, grant.status.value, grant.user_id, grant.approved_at, grant.used_at, grant.id),
            )

    def get_code_grant(self, grant_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[CodeGrant]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM code_grants WHERE id = ?", (grant_id,)).fetchone()
        return self._row_to_code_grant(row) if row else None

    def get_code_grant_by_code(self, code: str, conn: Optional[sqlite3.Connection] = None) -> Optional[CodeGrant]:
        with self._reading(conn) as c:
            row = c.execute("SELECT * FROM code_grants WHERE code = ?", (code,)).fetchone()
        return self._row_to_code_grant(row) if row else None

    # OAuth clients

    def upsert_oauth_client(self, client: OAuthClient) -> None:
        with self.transaction() as c:
            c.execute(
                """
                INSERT INTO oauth_clients (client_id, name, redirect_uris, permissions, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (client_id) DO UPDATE SET
                    name = excluded.name,
                    redirect_uris = excluded.redirect_uris,
                    permissions = excluded.permissions
                """,
                (
                    client.client_id,
                    client.name,
                    json.dumps(client.redirect_uris),
                    _dump_set(client.permissions),
                    client.created_at,
                ),
            )

    def get_oauth_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._reading(None) as c:
            row = c.execute("SELECT * FROM oauth_clients WHERE client_id = ?", (client_id,)).fetchone()
        if row is None:
            return None
        return OAuthClient(
            client_id=row["client_id"],
            name=row["name"],
            redirect_uris=json.loads(row["redirect_uris"]),
            permissions=_load_set(row["permissions"]) or frozenset(),
            created_at=row["created_at"],
        )

    # Webhooks

    def _row_to_subscription(self, row: sqlite3.Row) -> WebhookSubscription:
        return WebhookSubscription(
            id=row["id"],
            merchant_id=row["merchant_id"],
            url=row["url"],
            secret=row["secret"],
            events=_load_set(row["events"]) or frozenset(),
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def upsert_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        """Insert or replace the merchant's single registration; returns the stored row."""
        with self.transaction() as c:
            c.execute(
                """
                INSERT INTO webhook_subscriptions (
                    id, merchant_id, url, secret, events, enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (merchant_id) DO UPDATE SET
                    url = excluded.url,
                    secret = excluded.secret,
                    events = excluded.events,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    subscription.id,
                    subscription.merchant_id,
                    subscription.url,
                    subscription.secret,
                    _dump_set(subscription.events),
                    int(subscription.enabled),
                    subscription.created_at,
                    subscription.updated_at,
                ),
            )
            row = c.execute(
                "SELECT * FROM webhook_subscriptions WHERE merchant_id = ?",
                (subscription.merchant_id,),
            ).fetchone()
        return self._row_to_subscription(row)

    def get_subscription(self, merchant_id: str) -> Optional[WebhookSubscription]:
        with self._reading(None) as c:
            row = c.execute(
                "SELECT * FROM webhook_subscriptions WHERE merchant_id = ?", (merchant_id,)
            ).fetchone()
        return self._row_to_subscription(row) if row else None

    def delete_subscription(self, merchant_id: str) -> bool:
        with self.transaction() as c:
            cursor = c.execute(
                "DELETE FROM webhook_subscriptions WHERE merchant_id = ?", (merchant_id,)
            )
        return cursor.rowcount > 0

    def list_enabled_subscriptions(self) -> list[WebhookSubscription]:
        with self._reading(None) as c:
            rows = c.execute(
                "SELECT * FROM webhook_subscriptions WHERE enabled = 1 ORDER BY created_at, id"
            ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def insert_delivery_log(self, log: DeliveryLog) -> None:
        with self.transaction() as c:
            c.execute(
                """
                INSERT INTO webhook_delivery_logs (
                    id, webhook_id, event_type, payload, status_code, response_body,
                    error, duration_ms, attempted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.id,
                    log.webhook_id,
                    log.event_type,
                    log.payload,
                    log.status_code,
                    log.response_body,
                    log.error,
                    log.duration_ms,
                    log.attempted_at,
                ),
            )

    def list_delivery_logs(self, webhook_id: str, limit: int = 50) -> list[DeliveryLog]:
        with self._reading(None) as c:
            rows = c.execute(
                """
                SELECT * FROM webhook_delivery_logs WHERE webhook_id = ?
                ORDER BY attempted_at DESC, rowid DESC LIMIT ?
                """,
                (webhook_id, limit),
            ).fetchall()
        return [
            DeliveryLog(
                id=row["id"],
                webhook_id=row["webhook_id"],
                event_type=row["event_type"],
                payload=row["payload"],
                status_code=row["status_code"],
                response_body=row["response_body"],
                error=row["error"],
                duration_ms=row["duration_ms"],
                attempted_at=row["attempted_at"],
            )
            for row in rows
        ]

    # Notifications

    def find_notification(self, source_id: str, type_: str, statuses: tuple[str, ...]) -> Optional[NotificationRecord]:
        placeholders = ", ".join("?" for _ in statuses)
        with self._reading(None) as c:
            row = c.execute(
                f"""
                SELECT * FROM notification_logs
                WHERE source_id = ? AND type = ? AND status IN ({placeholders})
                ORDER BY created_at DESC LIMIT 1
                """,
                (source_id, type_, *statuses),
            ).fetchone()
        if row is None:
            return None
        return NotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            source_id=row["source_id"],
            status=row["status"],
            error=row["error"],
            created_at=row["created_at"],
        )

    def insert_notification(self, record: NotificationRecord) -> None:
        with self.transaction() as c:
            c.execute(
                """
                INSERT INTO notification_logs (id, user_id, type, source_id, status, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.type,
                    record.source_id,
                    record.status,
                    record.error,
                    record.created_at,
                ),
            )

    # Provider refresh credentials

    def save_refresh_token(self, provider: str, refresh_token: str, now: int) -> None:
        with self.transaction() as c:
            c.execute(
                """
                INSERT INTO provider_credentials (provider, refresh_token, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (provider) DO UPDATE SET
                    refresh_token = excluded.refresh_token,
                    updated_at = excluded.updated_at
                """,
                (provider, refresh_token, now),
            )

    def get_refresh_token(self, provider: str) -> Optional[str]:
        with self._reading(None) as c:
            row = c.execute(
                "SELECT refresh_token FROM provider_credentials WHERE provider = ?", (provider,)
            ).fetchone()
        return row["refresh_token"] if row else None
