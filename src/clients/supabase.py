# src/clients/supabase.py
"""Supabase-backed conversation store."""

import os
from typing import Any, Optional

from supabase import create_client, Client
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
    to_iso,
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

MAPS_TABLE = "conversation_maps"
REVISIONS_TABLE = "conversation_map_revisions"
SESSIONS_TABLE = "conversation_sessions"
EVENTS_TABLE = "conversation_events"


def _hint_for_supabase_error(error: Exception) -> str:
    message = str(error).lower()
    if ("relation" in message and "does not exist" in message) or "could not find the table" in message:
        return "Conversation flow tables are missing. Apply the conversation flow migration in Supabase."
    return "Supabase request failed for conversation flow storage."


def _is_duplicate(error: Exception) -> bool:
    message = str(error).lower()
    return "duplicate" in message or "unique" in message or "23505" in message


class SupabaseConversationStore:
    """Client for conversation flow tables in Supabase."""

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client from environment variables."""
        if client is None:
            url = os.getenv("SUPABASE_URL")
            key = os.getenv("SUPABASE_KEY")

            if not url:
                raise ValueError("SUPABASE_URL environment variable is required")
            if not key:
                raise ValueError("SUPABASE_KEY environment variable is required")

            client = create_client(url, key)

        self.client: Client = client

    def _execute(self, operation: str, query) -> Any:
        try:
            return query.execute()
        except Exception as e:
            log.error("supabase_request_failed", operation=operation, error=str(e))
            raise ConversationFlowError(
                "Supabase request failed.",
                kind=ErrorKind.STORAGE_FAILURE,
                hint=_hint_for_supabase_error(e),
                debug={"operation": operation, "supabase_error": str(e)},
            ) from e

    # Maps

    def get_map_by_experiment(
        self, brand_id: str, campaign_id: str, experiment_id: str
    ) -> Optional[ConversationMap]:
        result = self._execute(
            "get_map_by_experiment",
            self.client.table(MAPS_TABLE)
            .select("*")
            .eq("brand_id", brand_id)
            .eq("campaign_id", campaign_id)
            .eq("experiment_id", experiment_id)
            .limit(1),
        )
        return map_from_row(result.data[0]) if result.data else None

    def get_map(self, map_id: str) -> Optional[ConversationMap]:
        result = self._execute(
            "get_map",
            self.client.table(MAPS_TABLE).select("*").eq("id", map_id).limit(1),
        )
        return map_from_row(result.data[0]) if result.data else None

    def upsert_draft(self, conversation_map: ConversationMap) -> ConversationMap:
        """Insert the map, or update only its name and draft graph."""
        row = map_to_row(conversation_map)
        existing = self.get_map(conversation_map.id)
        if existing is None:
            result = self._execute("upsert_draft", self.client.table(MAPS_TABLE).insert(row))
        else:
            result = self._execute(
                "upsert_draft",
                self.client.table(MAPS_TABLE)
                .update({
                    "name": row["name"],
                    "draft_graph": row["draft_graph"],
                    "updated_at": row["updated_at"],
                })
                .eq("id", row["id"]),
            )
        return map_from_row(result.data[0]) if result.data else conversation_map

    def publish(self, conversation_map: ConversationMap) -> ConversationMap:
        """Store the revision snapshot, then point the map at it.

        The snapshot's (map_id, revision) key guards against concurrent
        publishes. The snapshot is removed again if the map update fails,
        so a map never names a revision that has no snapshot.
        """
        row = map_to_row(conversation_map)
        conflict = ConversationFlowError(
            "Conversation map changed while publishing.",
            kind=ErrorKind.CONCURRENT_UPDATE,
            hint="Reload the map and publish again.",
            debug={"operation": "publish", "map_id": row["id"], "revision": row["published_revision"]},
        )

        try:
            self.client.table(REVISIONS_TABLE).insert({
                "map_id": row["id"],
                "revision": row["published_revision"],
                "graph": row["published_graph"],
                "published_at": row["published_at"],
            }).execute()
        except Exception as e:
            if _is_duplicate(e):
                raise conflict from e
            log.error("supabase_request_failed", operation="publish_revision", error=str(e))
            raise ConversationFlowError(
                "Supabase request failed.",
                kind=ErrorKind.STORAGE_FAILURE,
                hint=_hint_for_supabase_error(e),
                debug={"operation": "publish_revision", "supabase_error": str(e)},
            ) from e

        try:
            result = self._execute(
                "publish",
                self.client.table(MAPS_TABLE)
                .update({
                    "status": row["status"],
                    "published_graph": row["published_graph"],
                    "published_revision": row["published_revision"],
                    "published_at": row["published_at"],
                    "updated_at": row["updated_at"],
                })
                .eq("id", row["id"])
                .eq("published_revision", row["published_revision"] - 1),
            )
            if not result.data:
                raise conflict
        except ConversationFlowError:
            self._discard_revision(row["id"], row["published_revision"])
            raise
        return conversation_map

    def _discard_revision(self, map_id: str, revision: int) -> None:
        try:
            self._execute(
                "discard_revision",
                self.client.table(REVISIONS_TABLE)
                .delete()
                .eq("map_id", map_id)
                .eq("revision", revision),
            )
        except ConversationFlowError as e:
            # Leaves an orphan snapshot; the next publish of this revision reports a conflict
            log.error("publish_revision_orphaned", map_id=map_id, revision=revision, error=e.message)

    def update_map_status(self, map_id: str, status: MapStatus) -> ConversationMap:
        result = self._execute(
            "update_map_status",
            self.client.table(MAPS_TABLE)
            .update({"status": status.value, "updated_at": to_iso(utc_now())})
            .eq("id", map_id),
        )
        if not result.data:
            raise ConversationFlowError(
                "Conversation map not found.",
                kind=ErrorKind.MAP_NOT_FOUND,
                debug={"operation": "update_map_status", "map_id": map_id},
            )
        return map_from_row(result.data[0])

    def get_published_graph(self, map_id: str, revision: int) -> Optional[ConversationFlowGraph]:
        result = self._execute(
            "get_published_graph",
            self.client.table(REVISIONS_TABLE)
            .select("graph")
            .eq("map_id", map_id)
            .eq("revision", revision)
            .limit(1),
        )
        return normalize_graph(result.data[0]["graph"]) if result.data else None

    # Sessions

    def create_session(self, session: ConversationSession) -> Optional[ConversationSession]:
        """Insert a session. Returns None if the (run, lead) pair already has one."""
        try:
            self.client.table(SESSIONS_TABLE).insert(session_to_row(session)).execute()
        except Exception as e:
            if _is_duplicate(e):
                log.info("session_duplicate_skipped", run_id=session.run_id, lead_id=session.lead_id)
                return None
            log.error("supabase_request_failed", operation="create_session", error=str(e))
            raise ConversationFlowError(
                "Supabase request failed.",
                kind=ErrorKind.STORAGE_FAILURE,
                hint=_hint_for_supabase_error(e),
                debug={"operation": "create_session", "supabase_error": str(e)},
            ) from e
        return session

    def get_session(self, session_id: str) -> Optional[ConversationSession]:
        result = self._execute(
            "get_session",
            self.client.table(SESSIONS_TABLE).select("*").eq("id", session_id).limit(1),
        )
        return session_from_row(result.data[0]) if result.data else None

    def get_session_by_lead(self, run_id: str, lead_id: str) -> Optional[ConversationSession]:
        result = self._execute(
            "get_session_by_lead",
            self.client.table(SESSIONS_TABLE)
            .select("*")
            .eq("run_id", run_id)
            .eq("lead_id", lead_id)
            .limit(1),
        )
        return session_from_row(result.data[0]) if result.data else None

    def list_sessions_by_run(self, run_id: str) -> list[ConversationSession]:
        result = self._execute(
            "list_sessions_by_run",
            self.client.table(SESSIONS_TABLE).select("*").eq("run_id", run_id).order("created_at"),
        )
        return [session_from_row(row) for row in result.data]

    def list_sessions_by_state(
        self, state: SessionState, limit: int = 100, offset: int = 0
    ) -> list[ConversationSession]:
        start = max(0, int(offset))
        result = self._execute(
            "list_sessions_by_state",
            self.client.table(SESSIONS_TABLE)
            .select("*")
            .eq("state", state.value)
            .order("last_node_entered_at")
            .order("id")
            .range(start, start + max(1, int(limit)) - 1),
        )
        return [session_from_row(row) for row in result.data]

    def update_session(
        self,
        session: ConversationSession,
        expected_turn_count: int,
        expected_state: SessionState,
    ) -> ConversationSession:
        """Commit a new session state if nobody else advanced it first."""
        row = session_to_row(session)
        result = self._execute(
            "update_session",
            self.client.table(SESSIONS_TABLE)
            .update({
                "state": row["state"],
                "current_node_id": row["current_node_id"],
                "turn_count": row["turn_count"],
                "last_intent": row["last_intent"],
                "last_confidence": row["last_confidence"],
                "last_node_entered_at": row["last_node_entered_at"],
                "ended_reason": row["ended_reason"],
                "updated_at": row["updated_at"],
            })
            .eq("id", row["id"])
            .eq("turn_count", expected_turn_count)
            .eq("state", expected_state.value),
        )
        if not result.data:
            raise ConversationFlowError(
                "Conversation session changed before the update was committed.",
                kind=ErrorKind.CONCURRENT_UPDATE,
                hint="Reload the session and apply the event again.",
                debug={"operation": "update_session", "session_id": row["id"],
                       "expected_turn_count": expected_turn_count,
                       "expected_state": expected_state.value},
            )
        return session

    # Events

    def append_event(self, event: ConversationEvent) -> ConversationEvent:
        self._execute("append_event", self.client.table(EVENTS_TABLE).insert(event_to_row(event)))
        return event

    def list_events_by_run(self, run_id: str, limit: int = 200) -> list[ConversationEvent]:
        """Events for a run, newest first."""
        result = self._execute(
            "list_events_by_run",
            self.client.table(EVENTS_TABLE)
            .select("*")
            .eq("run_id", run_id)
            .order("created_at", desc=True)
            .limit(clamp_event_limit(limit)),
        )
        return [event_from_row(row) for row in result.data]
