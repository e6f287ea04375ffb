"""Persistence contract consumed by the flow engine."""

from typing import Optional, Protocol

from src.flow.models import (
    ConversationEvent,
    ConversationFlowGraph,
    ConversationMap,
    ConversationSession,
    MapStatus,
    SessionState,
)


class ConversationStore(Protocol):
    """Atomic per-entity CRUD for maps, sessions and events.

    ``publish`` stores the map and an immutable snapshot of its published
    graph under ``(map id, revision)``. ``update_session`` only commits when
    the stored session still has ``expected_turn_count`` and
    ``expected_state``, and raises ``CONCURRENT_UPDATE`` otherwise.
    ``create_session`` returns None when the (run, lead) pair already has a
    session.
    """

    def get_map_by_experiment(
        self, brand_id: str, campaign_id: str, experiment_id: str
    ) -> Optional[ConversationMap]: ...

    def get_map(self, map_id: str) -> Optional[ConversationMap]: ...

    def upsert_draft(self, conversation_map: ConversationMap) -> ConversationMap: ...

    def publish(self, conversation_map: ConversationMap) -> ConversationMap: ...

    def update_map_status(self, map_id: str, status: MapStatus) -> ConversationMap: ...

    def get_published_graph(self, map_id: str, revision: int) -> Optional[ConversationFlowGraph]: ...

    def create_session(self, session: ConversationSession) -> Optional[ConversationSession]: ...

    def get_session(self, session_id: str) -> Optional[ConversationSession]: ...

    def get_session_by_lead(self, run_id: str, lead_id: str) -> Optional[ConversationSession]: ...

    def list_sessions_by_run(self, run_id: str) -> list[ConversationSession]: ...

    def list_sessions_by_state(
        self, state: SessionState, limit: int = 100, offset: int = 0
    ) -> list[ConversationSession]: ...

    def update_session(
        self,
        session: ConversationSession,
        expected_turn_count: int,
        expected_state: SessionState,
    ) -> ConversationSession: ...

    def append_event(self, event: ConversationEvent) -> ConversationEvent: ...

    def list_events_by_run(self, run_id: str, limit: int = 200) -> list[ConversationEvent]: ...
