"""SQLite database operations."""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import structlog

from src.core.errors import ConversationFlowError, ErrorKind
from src.core.storage import (
    clamp_event_limit,
    event_from_row,
    event_to_row,
    map_from_row,
    map_to_row,
    session_from_row,
    session_to_row,
)
from src.flow.models import (
    ConversationEvent,
    ConversationFlowGraph,
    ConversationMap,
    ConversationSession,
    MapStatus,
    SessionState,
    utc_now,
)
from src.flow.normalizer import normalize_graph

log = structlog.get_logger()

DEFAULT_DB_PATH = Path("data/conversation_flow.db")

SESSION_COLUMNS = (
    "id", "run_id", "brand_id", "campaign_id", "lead_id", "map_id", "map_revision",
    "state", "current_node_id", "turn_count", "last_intent", "last_confidence",
    "last_node_entered_at", "ended_reason", "created_at", "updated_at",
)


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get a database connection with row factory."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize database with schema."""
    conn = get_connection(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS conversation_maps (
            id TEXT PRIMARY KEY,
            brand_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            experiment_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT 'Variant Conversation Flow',
            status TEXT NOT NULL DEFAULT 'draft',

            -- Graphs as camelCase JSON
            draft_graph TEXT NOT NULL DEFAULT '{}',
            published_graph TEXT,
            published_revision INTEGER NOT NULL DEFAULT 0,
            published_at TIMESTAMP,

            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_conversation_maps_variant
            ON conversation_maps(brand_id, campaign_id, experiment_id);

        -- Immutable snapshot per publish, so sessions keep their revision
        CREATE TABLE IF NOT EXISTS conversation_map_revisions (
            map_id TEXT NOT NULL REFERENCES conversation_maps(id),
            revision INTEGER NOT NULL,
            graph TEXT NOT NULL,
            published_at TIMESTAMP NOT NULL,
            PRIMARY KEY (map_id, revision)
        );

        CREATE TABLE IF NOT EXISTS conversation_sessions (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            brand_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            lead_id TEXT NOT NULL,
            map_id TEXT NOT NULL REFERENCES conversation_maps(id),
            map_revision INTEGER NOT NULL DEFAULT 1,

            -- State machine
            state TEXT NOT NULL DEFAULT 'active',
            current_node_id TEXT NOT NULL,
            turn_count INTEGER NOT NULL DEFAULT 0,
            last_intent TEXT NOT NULL DEFAULT '',
            last_confidence REAL NOT NULL DEFAULT 0,
            last_node_entered_at TIMESTAMP NOT NULL,
            ended_reason TEXT NOT NULL DEFAULT '',

            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (run_id, lead_id)
        );

        CREATE INDEX IF NOT EXISTS idx_conversation_sessions_state ON conversation_sessions(state);

        CREATE TABLE IF NOT EXISTS conversation_events (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES conversation_sessions(id),
            run_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload TEXT NOT NULL DEFAULT '{}',
            created_at TIMESTAMP NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_conversation_events_run
            ON conversation_events(run_id, created_at);
    """)

    conn.commit()
    conn.close()


def _hint_for_sqlite_error(error: sqlite3.Error) -> str:
    if "no such table" in str(error).lower():
        return "Conversation flow tables are missing. Run init_db on this database file."
    return "SQLite request failed for conversation flow storage."


class SQLiteConversationStore:
    """Local-file implementation of the conversation store."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        init_db(self.db_path)

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            log.error("sqlite_request_failed", operation=operation, error=str(e))
            raise ConversationFlowError(
                "SQLite request failed.",
                kind=ErrorKind.STORAGE_FAILURE,
                hint=_hint_for_sqlite_error(e),
                debug={"operation": operation, "db_path": str(self.db_path), "sqlite_error": str(e)},
            ) from e
        finally:
            conn.close()

    # Maps

    def get_map_by_experiment(
        self, brand_id: str, campaign_id: str, experiment_id: str
    ) -> Optional[ConversationMap]:
        with self._connection("get_map_by_experiment") as conn:
            row = conn.execute(
                """
                SELECT * FROM conversation_maps
                WHERE brand_id = ? AND campaign_id = ? AND experiment_id = ?
                """,
                (brand_id, campaign_id, experiment_id),
            ).fetchone()
        return map_from_row(dict(row)) if row else None

    def get_map(self, map_id: str) -> Optional[ConversationMap]:
        with self._connection("get_map") as conn:
            row = conn.execute("SELECT * FROM conversation_maps WHERE id = ?", (map_id,)).fetchone()
        return map_from_row(dict(row)) if row else None

    def upsert_draft(self, conversation_map: ConversationMap) -> ConversationMap:
        """Insert the map, or update only its name and draft graph."""
        row = map_to_row(conversation_map)
        with self._connection("upsert_draft") as conn:
            conn.execute(
                """
                INSERT INTO conversation_maps
                (id, brand_id, campaign_id, experiment_id, name, status, draft_graph,
                 published_graph, published_revision, published_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    draft_graph = excluded.draft_graph,
                    updated_at = excluded.updated_at
                """,
                (
                    row["id"], row["brand_id"], row["campaign_id"], row["experiment_id"],
                    row["name"], row["status"], json.dumps(row["draft_graph"]),
                    json.dumps(row["published_graph"]) if row["published_graph"] else None,
                    row["published_revision"], row["published_at"],
                    row["created_at"], row["updated_at"],
                ),
            )
            conn.commit()
            stored = conn.execute(
                "SELECT * FROM conversation_maps WHERE id = ?", (row["id"],)
            ).fetchone()
        return map_from_row(dict(stored))

    def publish(self, conversation_map: ConversationMap) -> ConversationMap:
        """Store the published fields and the revision snapshot in one transaction."""
        row = map_to_row(conversation_map)
        graph_json = json.dumps(row["published_graph"])
        with self._connection("publish") as conn:
            cursor = conn.execute(
                """
                UPDATE conversation_maps
                SET status = ?, published_graph = ?, published_revision = ?,
                    published_at = ?, updated_at = ?
                WHERE id = ? AND published_revision = ?
                """,
                (
                    row["status"], graph_json, row["published_revision"],
                    row["published_at"], row["updated_at"],
                    row["id"], row["published_revision"] - 1,
                ),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise ConversationFlowError(
                    "Conversation map changed while publishing.",
                    kind=ErrorKind.CONCURRENT_UPDATE,
                    hint="Reload the map and publish again.",
                    debug={"operation": "publish", "map_id": row["id"],
                           "revision": row["published_revision"]},
                )
            conn.execute(
                """
                INSERT INTO conversation_map_revisions (map_id, revision, graph, published_at)
                VALUES (?, ?, ?, ?)
                """,
                (row["id"], row["published_revision"], graph_json, row["published_at"]),
            )
            conn.commit()
        return conversation_map

    def update_map_status(self, map_id: str, status: MapStatus) -> ConversationMap:
        with self._connection("update_map_status") as conn:
            conn.execute(
                "UPDATE conversation_maps SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, utc_now().isoformat(), map_id),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM conversation_maps WHERE id = ?", (map_id,)).fetchone()
        if not row:
            raise ConversationFlowError(
                "Conversation map not found.",
                kind=ErrorKind.MAP_NOT_FOUND,
                debug={"operation": "update_map_status", "map_id": map_id},
            )
        return map_from_row(dict(row))

    def get_published_graph(self, map_id: str, revision: int) -> Optional[ConversationFlowGraph]:
        with self._connection("get_published_graph") as conn:
            row = conn.execute(
                "SELECT graph FROM conversation_map_revisions WHERE map_id = ? AND revision = ?",
                (map_id, revision),
            ).fetchone()
        return normalize_graph(json.loads(row["graph"])) if row else None

    # Sessions

    def create_session(self, session: ConversationSession) -> Optional[ConversationSession]:
        """Insert a session. Returns None if the (run, lead) pair already has one."""
        row = session_to_row(session)
        with self._connection("create_session") as conn:
            try:
                conn.execute(
                    f"""
                    INSERT INTO conversation_sessions ({", ".join(SESSION_COLUMNS)})
                    VALUES ({", ".join("?" for _ in SESSION_COLUMNS)})
                    """,
                    tuple(row[column] for column in SESSION_COLUMNS),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                return None
        return session

    def get_session(self, session_id: str) -> Optional[ConversationSession]:
        with self._connection("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM conversation_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return session_from_row(dict(row)) if row else None

    def get_session_by_lead(self, run_id: str, lead_id: str) -> Optional[ConversationSession]:
        with self._connection("get_session_by_lead") as conn:
            row = conn.execute(
                "SELECT * FROM conversation_sessions WHERE run_id = ? AND lead_id = ?",
                (run_id, lead_id),
            ).fetchone()
        return session_from_row(dict(row)) if row else None

    def list_sessions_by_run(self, run_id: str) -> list[ConversationSession]:
        with self._connection("list_sessions_by_run") as conn:
            rows = conn.execute(
                "SELECT * FROM conversation_sessions WHERE run_id = ? ORDER BY created_at ASC",
                (run_id,),
            ).fetchall()
        return [session_from_row(dict(row)) for row in rows]

    def list_sessions_by_state(
        self, state: SessionState, limit: int = 100, offset: int = 0
    ) -> list[ConversationSession]:
        """Sessions in ``state``, longest-waiting first. ``offset`` pages through them."""
        with self._connection("list_sessions_by_state") as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation_sessions
                WHERE state = ?
                ORDER BY last_node_entered_at ASC, id ASC
                LIMIT ? OFFSET ?
                """,
                (state.value, max(1, int(limit)), max(0, int(offset))),
            ).fetchall()
        return [session_from_row(dict(row)) for row in rows]

    def update_session(
        self,
        session: ConversationSession,
        expected_turn_count: int,
        expected_state: SessionState,
    ) -> ConversationSession:
        """Commit a new session state if nobody else advanced it first."""
        row = session_to_row(session)
        with self._connection("update_session") as conn:
            cursor = conn.execute(
                """
                UPDATE conversation_sessions
                SET state = ?, current_node_id = ?, turn_count = ?, last_intent = ?,
                    last_confidence = ?, last_node_entered_at = ?, ended_reason = ?,
                    updated_at = ?
                WHERE id = ? AND turn_count = ? AND state = ?
                """,
                (
                    row["state"], row["current_node_id"], row["turn_count"], row["last_intent"],
                    row["last_confidence"], row["last_node_entered_at"], row["ended_reason"],
                    row["updated_at"],
                    row["id"], expected_turn_count, expected_state.value,
                ),
            )
            if cursor.rowcount == 0:
                raise ConversationFlowError(
                    "Conversation session changed before the update was committed.",
                    kind=ErrorKind.CONCURRENT_UPDATE,
                    hint="Reload the session and apply the event again.",
                    debug={"operation": "update_session", "session_id": row["id"],
                           "expected_turn_count": expected_turn_count,
                           "expected_state": expected_state.value},
                )
            conn.commit()
        return session

    # Events

    def append_event(self, event: ConversationEvent) -> ConversationEvent:
        row = event_to_row(event)
        with self._connection("append_event") as conn:
            conn.execute(
                """
                INSERT INTO conversation_events (id, session_id, run_id, event_type, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (row["id"], row["session_id"], row["run_id"], row["event_type"],
                 json.dumps(row["payload"]), row["created_at"]),
            )
            conn.commit()
        return event

    def list_events_by_run(self, run_id: str, limit: int = 200) -> list[ConversationEvent]:
        """Events for a run, newest first."""
        with self._connection("list_events_by_run") as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation_events
                WHERE run_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (run_id, clamp_event_limit(limit)),
            ).fetchall()
        return [event_from_row(dict(row)) for row in rows]
