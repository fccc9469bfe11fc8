"""SQLite storage implementation."""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import aiosqlite

from ..config import resolve_db_path
from ..models import (
    Agent,
    BusMessage,
    Intervention,
    Issue,
    IssueType,
    Outcome,
    ResourceLimits,
    Severity,
    Topic,
    TraceEvent,
)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class IStorage(Protocol):
    """Persistent storage for registrations and the audit trail (SQLite)."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Agents
    async def save_agent(self, agent: Agent) -> None:
        """Upsert an agent registration."""
        ...

    async def delete_agent(self, agent_id: str) -> None:
        """Remove an agent registration."""
        ...

    async def get_agents(self) -> list[Agent]:
        """Get all registered agents."""
        ...

    # Issues
    async def save_issue(self, issue: Issue) -> None:
        """Append an issue."""
        ...

    async def get_issues(
        self, agent_id: str | None = None, limit: int = 100
    ) -> list[Issue]:
        """Get issues (newest first)."""
        ...

    # Interventions
    async def save_intervention(self, intervention: Intervention) -> None:
        """Append a completed intervention."""
        ...

    async def get_interventions(
        self, agent_id: str | None = None, limit: int = 500
    ) -> list[Intervention]:
        """Get completed interventions (oldest first)."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # BusMessages
    async def save_bus_message(self, message: BusMessage) -> None:
        """Save a bus message."""
        ...

    async def get_bus_messages(self, limit: int = 100) -> list[BusMessage]:
        """Get bus messages (newest first)."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    # Agents
    async def save_agent(self, agent: Agent) -> None:
        """Upsert an agent registration."""
        conn = self._require_conn()
        limits = agent.resource_limits

        await conn.execute(
            """
            INSERT OR REPLACE INTO agents
            (id, type, dependencies, resource_limits, health_url, command_url,
             registered_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                agent.id,
                agent.type,
                json.dumps(sorted(agent.dependencies)),
                json.dumps(
                    {
                        "memory": limits.memory,
                        "cpu": limits.cpu,
                        "rate_limit": limits.rate_limit,
                    }
                ),
                agent.health_url,
                agent.command_url,
                (agent.registered_at or datetime.now(timezone.utc)).isoformat(),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await conn.commit()

    async def delete_agent(self, agent_id: str) -> None:
        """Remove an agent registration."""
        conn = self._require_conn()
        await conn.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
        await conn.commit()

    async def get_agents(self) -> list[Agent]:
        """Get all registered agents."""
        conn = self._require_conn()

        cursor = await conn.execute(
            """
            SELECT id, type, dependencies, resource_limits, health_url,
                   command_url, registered_at
            FROM agents
            ORDER BY registered_at ASC
            """
        )
        rows = await cursor.fetchall()

        return [
            Agent(
                id=row[0],
                type=row[1],
                dependencies=set(json.loads(row[2])),
                resource_limits=ResourceLimits(**json.loads(row[3])),
                health_url=row[4],
                command_url=row[5],
                registered_at=_parse_ts(row[6]),
            )
            for row in rows
        ]

    # Issues
    async def save_issue(self, issue: Issue) -> None:
        """Append an issue."""
        conn = self._require_conn()

        await conn.execute(
            """
            INSERT INTO issues (id, agent_id, type, severity, detected_at, evidence)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                issue.id or str(uuid.uuid4()),
                issue.agent_id,
                issue.type.value,
                issue.severity.value,
                issue.detected_at.isoformat(),
                json.dumps(issue.evidence, default=str),
            ),
        )
        await conn.commit()

    async def get_issues(
        self, agent_id: str | None = None, limit: int = 100
    ) -> list[Issue]:
        """Get issues (newest first)."""
        conn = self._require_conn()

        where_clause = "WHERE agent_id = ?" if agent_id else ""
        params: list = [agent_id] if agent_id else []
        params.append(limit)

        cursor = await conn.execute(
            f"""
            SELECT id, agent_id, type, severity, detected_at, evidence
            FROM issues
            {where_clause}
            ORDER BY detected_at DESC
            LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()

        return [
            Issue(
                id=row[0],
                agent_id=row[1],
                type=IssueType(row[2]),
                severity=Severity(row[3]),
                detected_at=_parse_ts(row[4]),
                evidence=json.loads(row[5]),
            )
            for row in rows
        ]

    # Interventions
    async def save_intervention(self, intervention: Intervention) -> None:
        """Append a completed intervention."""
        conn = self._require_conn()
        if intervention.outcome is None or intervention.completed_at is None:
            raise ValueError("Only completed interventions are persisted")

        await conn.execute(
            """
            INSERT INTO interventions
            (id, agent_id, triggering_issue_id, chain_id, level, actions,
             attempts, started_at, completed_at, outcome)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                intervention.id,
                intervention.agent_id,
                intervention.triggering_issue_id,
                intervention.chain_id,
                intervention.level,
                json.dumps(intervention.actions),
                intervention.attempts,
                intervention.started_at.isoformat(),
                intervention.completed_at.isoformat(),
                intervention.outcome.value,
            ),
        )
        await conn.commit()

    async def get_interventions(
        self, agent_id: str | None = None, limit: int = 500
    ) -> list[Intervention]:
        """Get completed interventions (oldest first)."""
        conn = self._require_conn()

        where_clause = "WHERE agent_id = ?" if agent_id else ""
        params: list = [agent_id] if agent_id else []
        params.append(limit)

        # rowid breaks ties between levels completed in the same instant
        cursor = await conn.execute(
            f"""
            SELECT id, agent_id, triggering_issue_id, chain_id, level, actions,
                   attempts, started_at, completed_at, outcome
            FROM interventions
            {where_clause}
            ORDER BY started_at ASC, rowid ASC
            LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()

        return [
            Intervention(
                id=row[0],
                agent_id=row[1],
                triggering_issue_id=row[2],
                chain_id=row[3],
                level=row[4],
                actions=json.loads(row[5]),
                attempts=row[6],
                started_at=_parse_ts(row[7]),
                completed_at=_parse_ts(row[8]),
                outcome=Outcome(row[9]),
            )
            for row in rows
        ]

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        conn = self._require_conn()

        await conn.execute(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                json.dumps(event.data, default=str),
                event.timestamp.isoformat(),
            ),
        )
        await conn.commit()

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        conn = self._require_conn()

        # Build query dynamically
        conditions = []
        params: list = []

        if after:
            conditions.append("timestamp > ?")
            params.append(after.isoformat())
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_parse_ts(row[4]),
            )
            for row in rows
        ]

    # BusMessages
    async def save_bus_message(self, message: BusMessage) -> None:
        """Save a bus message."""
        conn = self._require_conn()

        await conn.execute(
            """
            INSERT INTO bus_messages (id, topic, payload, source, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                message.id or str(uuid.uuid4()),
                message.topic.value,
                json.dumps(message.payload, default=str),
                message.source,
                message.timestamp.isoformat(),
            ),
        )
        await conn.commit()

    async def get_bus_messages(self, limit: int = 100) -> list[BusMessage]:
        """Get bus messages (newest first)."""
        conn = self._require_conn()

        cursor = await conn.execute(
            """
            SELECT id, topic, payload, source, timestamp
            FROM bus_messages
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()

        return [
            BusMessage(
                id=row[0],
                topic=Topic(row[1]),
                payload=json.loads(row[2]),
                source=row[3],
                timestamp=_parse_ts(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        conn = self._require_conn()

        tables = [
            "agents",
            "issues",
            "interventions",
            "trace_events",
            "bus_messages",
        ]

        for table in tables:
            await conn.execute(f"DELETE FROM {table}")

        await conn.commit()
