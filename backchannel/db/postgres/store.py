from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Literal

from backchannel.core.errors import (
    AlreadyTerminal,
    Forbidden,
    RequestNotFound,
    StoreUnavailable,
)
from backchannel.core.models.authorization import (
    AuthorizationRequest,
    AuthorizationState,
    utcnow,
)
from backchannel.core.stores import AuthorizationRequestStore, Clock

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - optional dependency
    psycopg = None
    dict_row = None

SCHEMA = """
CREATE TABLE IF NOT EXISTS authorization_requests (
    id TEXT PRIMARY KEY,
    owner_user_id TEXT NOT NULL,
    payload JSONB NOT NULL,
    binding_message TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    channel TEXT NOT NULL DEFAULT 'push',
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    decided_at TIMESTAMPTZ,
    decided_by TEXT,
    completion_claimed BOOLEAN NOT NULL DEFAULT FALSE,
    result JSONB,
    error TEXT
);
CREATE INDEX IF NOT EXISTS authorization_requests_owner_idx
    ON authorization_requests (owner_user_id, state);
CREATE INDEX IF NOT EXISTS authorization_requests_expiry_idx
    ON authorization_requests (expires_at);
"""

_COLUMNS = (
    "id, owner_user_id, payload, binding_message, state, channel, created_at, expires_at, "
    "decided_at, decided_by, completion_claimed, result, error"
)


def postgres_available() -> bool:
    return psycopg is not None


def _coerce_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _row_to_request(row: dict[str, Any]) -> AuthorizationRequest:
    return AuthorizationRequest.model_validate(
        {
            "request_id": row["id"],
            "owner_user_id": row["owner_user_id"],
            "payload": _coerce_json(row["payload"]) or {},
            "binding_message": row["binding_message"],
            "state": row["state"],
            "channel": row["channel"],
            "created_at": row["created_at"],
            "expires_at": row["expires_at"],
            "decided_at": row["decided_at"],
            "decided_by": row["decided_by"],
            "completion_claimed": row["completion_claimed"],
            "result": _coerce_json(row["result"]),
            "error": row["error"],
        }
    )


class PostgresStoreBase:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        if psycopg is None:
            raise StoreUnavailable("psycopg is not installed")
        try:
            conn = psycopg.connect(self._dsn, row_factory=dict_row)
        except psycopg.Error as exc:
            raise StoreUnavailable(f"postgres unreachable: {exc}") from exc
        try:
            yield conn
        except psycopg.Error as exc:
            raise StoreUnavailable(f"postgres query failed: {exc}") from exc
        finally:
            conn.close()


class PostgresAuthorizationRequestStore(PostgresStoreBase, AuthorizationRequestStore):
    """Authorization requests in Postgres.

    State changes are single conditional UPDATEs, so concurrent deciders and
    pollers across processes are serialized by the database row lock.
    """

    def __init__(self, dsn: str, clock: Clock = utcnow) -> None:
        super().__init__(dsn)
        self._clock = clock

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA)
            conn.commit()

    def _fetch(self, cur, request_id: str) -> AuthorizationRequest:
        cur.execute(
            f"SELECT {_COLUMNS} FROM authorization_requests WHERE id = %s",  # noqa: S608
            (request_id,),
        )
        row = cur.fetchone()
        if not row:
            raise RequestNotFound(request_id)
        return _row_to_request(row)

    def create(
        self,
        owner_user_id: str,
        payload: dict[str, Any],
        binding_message: str,
        ttl_seconds: float,
        channel: Literal["push", "popup"] = "push",
    ) -> AuthorizationRequest:
        record = AuthorizationRequest.create(
            owner_user_id=owner_user_id,
            payload=payload,
            binding_message=binding_message,
            ttl_seconds=ttl_seconds,
            channel=channel,
            now=self._clock(),
        )
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO authorization_requests
                        (id, owner_user_id, payload, binding_message, state, channel,
                         created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.request_id,
                        record.owner_user_id,
                        json.dumps(record.payload),
                        record.binding_message,
                        record.state.value,
                        record.channel,
                        record.created_at,
                        record.expires_at,
                    ),
                )
            conn.commit()
        return record

    def get(self, request_id: str) -> AuthorizationRequest:
        with self._connect() as conn:
            with conn.cursor() as cur:
                record = self._fetch(cur, request_id)
        return record.view(self._clock())

    def transition(
        self, request_id: str, owner_user_id: str, new_state: AuthorizationState
    ) -> AuthorizationRequest:
        now = self._clock()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE authorization_requests
                    SET state = %s, decided_at = %s, decided_by = %s
                    WHERE id = %s AND owner_user_id = %s
                      AND state = 'pending' AND expires_at > %s
                    RETURNING {_COLUMNS}
                    """,  # noqa: S608
                    (new_state.value, now, owner_user_id, request_id, owner_user_id, now),
                )
                row = cur.fetchone()
                if row is None:
                    current = self._fetch(cur, request_id)
                    if current.owner_user_id != owner_user_id:
                        raise Forbidden(request_id)
                    effective = current.effective_state(now)
                    if effective is not current.state:
                        cur.execute(
                            "UPDATE authorization_requests SET state = %s "
                            "WHERE id = %s AND state = 'pending'",
                            (effective.value, request_id),
                        )
                    conn.commit()
                    raise AlreadyTerminal(request_id, effective)
            conn.commit()
        return _row_to_request(row)

    def claim_completion(self, request_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE authorization_requests
                    SET completion_claimed = TRUE
                    WHERE id = %s AND state = 'approved' AND NOT completion_claimed
                    RETURNING id
                    """,
                    (request_id,),
                )
                claimed = cur.fetchone() is not None
                if not claimed:
                    self._fetch(cur, request_id)
            conn.commit()
        return claimed

    def record_result(
        self,
        request_id: str,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> AuthorizationRequest:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE authorization_requests SET result = %s, error = %s
                    WHERE id = %s
                    RETURNING {_COLUMNS}
                    """,  # noqa: S608
                    (json.dumps(result) if result is not None else None, error, request_id),
                )
                row = cur.fetchone()
            conn.commit()
        if row is None:
            raise RequestNotFound(request_id)
        return _row_to_request(row)

    def delete(self, request_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM authorization_requests WHERE id = %s", (request_id,))
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def list_for_user(self, owner_user_id: str) -> list[AuthorizationRequest]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM authorization_requests
                    WHERE owner_user_id = %s AND state = 'pending' AND expires_at > %s
                    ORDER BY created_at DESC
                    """,  # noqa: S608
                    (owner_user_id, self._clock()),
                )
                rows = cur.fetchall()
        return [_row_to_request(row) for row in rows]

    def purge_expired(self, grace_seconds: float = 0.0) -> int:
        cutoff = self._clock() - timedelta(seconds=grace_seconds)
        with self._connect() as conn:
            with conn.cursor() as cur:
                # Approved requests whose effect is in flight stay until it is recorded.
                cur.execute(
                    """
                    DELETE FROM authorization_requests
                    WHERE expires_at <= %s
                      AND NOT (state = 'approved' AND completion_claimed
                               AND result IS NULL AND error IS NULL)
                    """,
                    (cutoff,),
                )
                deleted = cur.rowcount
            conn.commit()
        return deleted
