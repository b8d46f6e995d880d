"""
Session records and session storage for Market Analyst.

WHY THIS FILE EXISTS:
--------------------
A session is one complete run: query in, report out. The record keeps
everything needed to explain the report later:
- The query and the target entities extracted from it
- The execution plan snapshot, including every step's outcome
- Judgments per entity and the final summary
- The step-level error log, so "partial data" can be told apart from
  "system broken"

PERSISTENCE:
-----------
The orchestrator only sees the narrow SessionStore interface
(put / get_recent / get_by_id / prune). JsonSessionStore keeps one JSON
file per session in ~/.analyst/sessions/.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from schemas import AnalysisResult, ExecutionPlan, FinalSummary, SessionStatus

logger = logging.getLogger(__name__)


# =============================================================================
# SESSION DATA CLASSES
# =============================================================================

@dataclass
class SessionTranscriptEntry:
    """
    A single entry in the session transcript.

    The transcript is a log of everything that happened in the session:
    state changes, step outcomes, fallbacks taken.
    """
    timestamp: str
    event_type: str  # "state_changed", "step_executed", "plan_fallback", etc.
    state: str
    content: dict


@dataclass
class Session:
    """
    Complete record of one analysis run.

    Results from collaborators are stored as dicts so the whole record
    serializes straight to JSON; the get_* helpers give typed views back.
    """
    # Identity
    session_id: str
    created_at: str
    updated_at: str

    # Input
    query: str
    target_entities: list = field(default_factory=list)

    # Progress
    state: str = "planning"
    status: str = SessionStatus.COMPLETED.value
    completed_at: Optional[str] = None

    # Plan snapshot and outputs
    plan: Optional[dict] = None
    used_fallback_plan: bool = False
    market_context: str = ""
    results: dict = field(default_factory=dict)  # entity -> list of AnalysisResult dicts
    summary: Optional[dict] = None

    # Errors
    step_errors: list = field(default_factory=list)
    context_errors: list = field(default_factory=list)

    transcript: list = field(default_factory=list)

    @classmethod
    def new(cls, query: str, target_entities: Optional[list[str]] = None) -> "Session":
        """Create a fresh session with an 8-character id."""
        now = datetime.now().isoformat()
        session = cls(
            session_id=str(uuid.uuid4())[:8],
            created_at=now,
            updated_at=now,
            query=query,
            target_entities=list(target_entities or []),
        )
        session.add_transcript_entry("session_created", {"query": query})
        return session

    def to_dict(self) -> dict:
        """Convert session to a dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Create a Session from a dictionary."""
        return cls(**data)

    def add_transcript_entry(self, event_type: str, content: dict) -> None:
        """Add an entry to the session transcript."""
        entry = SessionTranscriptEntry(
            timestamp=datetime.now().isoformat(),
            event_type=event_type,
            state=self.state,
            content=content,
        )
        self.transcript.append(asdict(entry))
        self.updated_at = datetime.now().isoformat()

    def set_state(self, state: str) -> None:
        if state != self.state:
            previous = self.state
            self.state = state
            self.add_transcript_entry("state_changed", {"from": previous, "to": state})

    def set_plan(self, plan: ExecutionPlan, fallback: bool = False) -> None:
        """Store a snapshot of the execution plan."""
        self.plan = plan.model_dump(mode="json")
        self.used_fallback_plan = fallback
        self.add_transcript_entry("plan_ready", {
            "steps_count": len(plan.steps),
            "fallback": fallback,
        })

    def add_result(self, result: AnalysisResult) -> None:
        self.results.setdefault(result.target_entity, []).append(result.model_dump(mode="json"))
        self.updated_at = datetime.now().isoformat()

    def record_step_error(self, step_id: str, error_kind: str, message: str) -> None:
        self.step_errors.append(f"{step_id}: {error_kind} error: {message}")
        self.updated_at = datetime.now().isoformat()

    def set_summary(self, summary: FinalSummary) -> None:
        self.summary = summary.model_dump(mode="json")
        self.add_transcript_entry("summary_ready", {
            "sentiment": summary.overall_sentiment,
            "fallback": summary.is_fallback,
        })

    def finish(self, status: SessionStatus) -> None:
        self.status = status.value
        self.completed_at = datetime.now().isoformat()
        self.add_transcript_entry("session_finished", {"status": status.value})

    def get_plan(self) -> Optional[ExecutionPlan]:
        """Get plan as Pydantic model."""
        if self.plan:
            return ExecutionPlan.model_validate(self.plan)
        return None

    def get_results(self) -> list[AnalysisResult]:
        """All judgments, in entity order."""
        return [
            AnalysisResult.model_validate(item)
            for items in self.results.values()
            for item in items
        ]

    def get_summary(self) -> Optional[FinalSummary]:
        """Get summary as Pydantic model."""
        if self.summary:
            return FinalSummary.model_validate(self.summary)
        return None

    @property
    def result_count(self) -> int:
        return sum(len(items) for items in self.results.values())


# =============================================================================
# SESSION STORE INTERFACE
# =============================================================================

class SessionStore(ABC):
    """Where finished sessions go."""

    @abstractmethod
    def put(self, session: Session) -> None:
        """Insert or replace a session."""
        pass

    @abstractmethod
    def get_recent(self, limit: int = 10) -> list[Session]:
        """Most recent sessions first."""
        pass

    @abstractmethod
    def get_by_id(self, session_id: str) -> Optional[Session]:
        """The session, or None if there is no such id."""
        pass

    @abstractmethod
    def prune(self, cutoff: datetime) -> int:
        """Remove sessions created before cutoff. Returns how many were removed."""
        pass


# =============================================================================
# JSON FILE STORE
# =============================================================================

class JsonSessionStore(SessionStore):
    """
    Stores each session as a JSON file.

    Usage:
        store = JsonSessionStore()
        store.put(session)

        # Later...
        session = store.get_by_id("abc12345")
    """

    def __init__(self, base_path: Optional[Path] = None, max_sessions: Optional[int] = None):
        """
        Args:
            base_path: Directory for session files. Defaults to ~/.analyst/sessions
            max_sessions: Keep at most this many sessions; the oldest are
                removed on put()
        """
        self.base_path = Path(base_path) if base_path else Path.home() / ".analyst" / "sessions"
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.max_sessions = max_sessions

    def _session_path(self, session_id: str) -> Path:
        return self.base_path / f"{session_id}.json"

    def put(self, session: Session) -> None:
        path = self._session_path(session.session_id)
        with open(path, "w") as f:
            json.dump(session.to_dict(), f, indent=2, default=str)

        if self.max_sessions:
            for stale in self._load_all()[self.max_sessions:]:
                self.delete(stale.session_id)

    def _load_all(self) -> list[Session]:
        sessions = []
        for path in self.base_path.glob("*.json"):
            try:
                with open(path) as f:
                    sessions.append(Session.from_dict(json.load(f)))
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning("Skipping unreadable session file %s: %s", path.name, e)
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    def get_recent(self, limit: int = 10) -> list[Session]:
        return self._load_all()[:limit]

    def get_by_id(self, session_id: str) -> Optional[Session]:
        path = self._session_path(session_id)
        if not path.exists():
            return None
        with open(path) as f:
            return Session.from_dict(json.load(f))

    def delete(self, session_id: str) -> bool:
        """
        Delete a session.

        Returns:
            True if deleted, False if didn't exist
        """
        path = self._session_path(session_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def prune(self, cutoff: datetime) -> int:
        removed = 0
        for session in self._load_all():
            if datetime.fromisoformat(session.created_at) < cutoff:
                if self.delete(session.session_id):
                    removed += 1
        return removed
