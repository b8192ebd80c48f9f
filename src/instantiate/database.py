"""
PostgreSQL implementation of the Store.

The connection pool is created once per process (create_pool) and handed to
PostgresStore, so nothing in the engine holds module level connections.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set

import psycopg2
import psycopg2.extras
import psycopg2.pool

from .models import (
    CanonicalEvent,
    MergeRequestState,
    PortLease,
    Provider,
    StackRecord,
    StackStatus,
)
from .store import Store, StoreError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS merge_requests (
    id SERIAL PRIMARY KEY,
    project_id VARCHAR(255) NOT NULL,
    mr_id VARCHAR(255) NOT NULL,
    project_name VARCHAR(255),
    merge_request_name TEXT,
    repo VARCHAR(500),
    status VARCHAR(32) NOT NULL,
    commit_sha VARCHAR(64),
    comment_id VARCHAR(64),
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (project_id, mr_id)
);

CREATE TABLE IF NOT EXISTS exposed_ports (
    id SERIAL PRIMARY KEY,
    project_id VARCHAR(255) NOT NULL,
    mr_id VARCHAR(255) NOT NULL,
    service VARCHAR(255) NOT NULL,
    name VARCHAR(255) NOT NULL,
    internal_port INTEGER,
    external_port INTEGER NOT NULL UNIQUE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (project_id, mr_id, service, name)
);

CREATE TABLE IF NOT EXISTS stacks (
    id SERIAL PRIMARY KEY,
    project_id VARCHAR(255) NOT NULL,
    mr_id VARCHAR(255) NOT NULL,
    project_name VARCHAR(255),
    merge_request_name TEXT,
    ports JSONB NOT NULL DEFAULT '{}'::jsonb,
    provider VARCHAR(32) NOT NULL,
    orchestrator VARCHAR(32) NOT NULL DEFAULT 'compose',
    status VARCHAR(32) NOT NULL,
    links JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (project_id, mr_id)
);
"""


def create_pool(database_url: str, max_connections: int = 5) -> psycopg2.pool.ThreadedConnectionPool:
    """Open the process wide connection pool."""
    try:
        return psycopg2.pool.ThreadedConnectionPool(1, max_connections, database_url)
    except psycopg2.Error as e:
        raise StoreError(f"Failed to connect to database: {e}") from e


class PostgresStore(Store):
    """Store backed by the merge_requests, exposed_ports and stacks tables."""

    def __init__(self, pool):
        self.pool = pool

    @contextmanager
    def _cursor(self) -> Iterator:
        conn = self.pool.getconn()
        try:
            with conn.cursor() as cursor:
                yield cursor
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def initialize_schema(self) -> None:
        """Create the ledger tables if they do not exist yet."""
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)
        logger.info("Database schema initialized")

    def update_merge_request(self, event: CanonicalEvent, state: MergeRequestState) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO merge_requests
                    (project_id, mr_id, project_name, merge_request_name, repo, status, commit_sha)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (project_id, mr_id) DO UPDATE SET
                    project_name = EXCLUDED.project_name,
                    merge_request_name = EXCLUDED.merge_request_name,
                    repo = EXCLUDED.repo,
                    status = EXCLUDED.status,
                    commit_sha = EXCLUDED.commit_sha,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    event.project_id,
                    event.mr_id,
                    event.project_name,
                    event.title,
                    event.full_name,
                    state.value,
                    event.commit_sha,
                ),
            )

    def _merge_request_column(self, column: str, project_id: str, mr_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {column} FROM merge_requests WHERE project_id = %s AND mr_id = %s",
                (project_id, mr_id),
            )
            row = cursor.fetchone()
        return row[0] if row else None

    def get_merge_request_state(self, project_id: str, mr_id: str) -> Optional[MergeRequestState]:
        value = self._merge_request_column("status", project_id, mr_id)
        return MergeRequestState(value) if value else None

    def get_last_commit_sha(self, project_id: str, mr_id: str) -> Optional[str]:
        return self._merge_request_column("commit_sha", project_id, mr_id)

    def get_comment_id(self, project_id: str, mr_id: str) -> Optional[str]:
        return self._merge_request_column("comment_id", project_id, mr_id)

    def set_comment_id(self, project_id: str, mr_id: str, comment_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE merge_requests SET comment_id = %s, updated_at = CURRENT_TIMESTAMP "
                "WHERE project_id = %s AND mr_id = %s",
                (str(comment_id), project_id, mr_id),
            )

    def get_lease(
        self, project_id: str, mr_id: str, service: str, slot_name: str
    ) -> Optional[PortLease]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT internal_port, external_port FROM exposed_ports
                WHERE project_id = %s AND mr_id = %s AND service = %s AND name = %s
                """,
                (project_id, mr_id, service, slot_name),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return PortLease(
            project_id=project_id,
            mr_id=mr_id,
            service=service,
            slot_name=slot_name,
            internal_port=row[0],
            external_port=row[1],
        )

    def get_used_ports(self, exclude: Optional[PortLease] = None) -> Set[int]:
        with self._cursor() as cursor:
            if exclude is None:
                cursor.execute("SELECT external_port FROM exposed_ports")
            else:
                cursor.execute(
                    """
                    SELECT external_port FROM exposed_ports
                    WHERE NOT (project_id = %s AND mr_id = %s AND service = %s AND name = %s)
                    """,
                    (exclude.project_id, exclude.mr_id, exclude.service, exclude.slot_name),
                )
            return {row[0] for row in cursor.fetchall()}

    def add_lease(self, lease: PortLease) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO exposed_ports
                    (project_id, mr_id, service, name, internal_port, external_port)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    lease.project_id,
                    lease.mr_id,
                    lease.service,
                    lease.slot_name,
                    lease.internal_port,
                    lease.external_port,
                ),
            )

    def update_lease_port(self, lease: PortLease, external_port: int) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE exposed_ports SET external_port = %s
                WHERE project_id = %s AND mr_id = %s AND service = %s AND name = %s
                """,
                (external_port, lease.project_id, lease.mr_id, lease.service, lease.slot_name),
            )
            if cursor.rowcount == 0:
                raise StoreError(
                    f"No lease to update for {lease.project_id}/{lease.mr_id} "
                    f"{lease.service}.{lease.slot_name}"
                )
        lease.external_port = external_port

    def release_leases(self, project_id: str, mr_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM exposed_ports WHERE project_id = %s AND mr_id = %s",
                (project_id, mr_id),
            )
            return cursor.rowcount

    def get_ports_for(self, project_id: str, mr_id: str) -> Dict[str, int]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT name, external_port FROM exposed_ports WHERE project_id = %s AND mr_id = %s",
                (project_id, mr_id),
            )
            return {row[0]: row[1] for row in cursor.fetchall()}

    def save_stack(self, record: StackRecord) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO stacks
                    (project_id, mr_id, project_name, merge_request_name, ports,
                     provider, orchestrator, status, links)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (project_id, mr_id) DO UPDATE SET
                    project_name = EXCLUDED.project_name,
                    merge_request_name = EXCLUDED.merge_request_name,
                    ports = EXCLUDED.ports,
                    provider = EXCLUDED.provider,
                    orchestrator = EXCLUDED.orchestrator,
                    status = EXCLUDED.status,
                    links = EXCLUDED.links,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    record.project_id,
                    record.mr_id,
                    record.project_name,
                    record.mr_name,
                    psycopg2.extras.Json(record.ports),
                    record.provider.value,
                    record.orchestrator,
                    record.status.value,
                    psycopg2.extras.Json(record.links),
                ),
            )

    _STACK_COLUMNS = (
        "project_id, mr_id, project_name, merge_request_name, ports, provider, "
        "orchestrator, status, links, created_at, updated_at"
    )

    @staticmethod
    def _row_to_stack(row) -> StackRecord:
        return StackRecord(
            project_id=row[0],
            mr_id=row[1],
            project_name=row[2],
            mr_name=row[3],
            ports={name: int(port) for name, port in (row[4] or {}).items()},
            provider=Provider(row[5]),
            orchestrator=row[6],
            status=StackStatus(row[7]),
            links=dict(row[8] or {}),
            created_at=row[9],
            updated_at=row[10],
        )

    def get_stack(self, project_id: str, mr_id: str) -> Optional[StackRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {self._STACK_COLUMNS} FROM stacks WHERE project_id = %s AND mr_id = %s",
                (project_id, mr_id),
            )
            row = cursor.fetchone()
        return self._row_to_stack(row) if row else None

    def list_stacks(self) -> List[StackRecord]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT {self._STACK_COLUMNS} FROM stacks ORDER BY created_at")
            rows = cursor.fetchall()
        return [self._row_to_stack(row) for row in rows]

    def update_stack_status(self, project_id: str, mr_id: str, status: StackStatus) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE stacks SET status = %s, updated_at = CURRENT_TIMESTAMP "
                "WHERE project_id = %s AND mr_id = %s",
                (status.value, project_id, mr_id),
            )
            return cursor.rowcount > 0

    def remove_stack(self, project_id: str, mr_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM stacks WHERE project_id = %s AND mr_id = %s",
                (project_id, mr_id),
            )
