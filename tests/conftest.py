"""Shared fixtures: in-memory reconciler store, scripted completion service,
recording publisher and an SQLite database for the SQL store tests."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from mwf.completion import CompletionError
from mwf.config import Settings
from mwf.reconciler.coordinator import ReconciliationCoordinator
from mwf.reconciler.direction import DirectionReconciler
from mwf.reconciler.gap_analyzer import GapAnalyzer
from mwf.reconciler.schemas import Direction
from mwf.reconciler.share_suggestion import ShareSuggestionGenerator
from mwf.storage.database import Database
from mwf.storage.models import (
    ContextMessage,
    EmpathyAttempt,
    Participant,
    ReconciliationResult,
    SelfReport,
    ShareOffer,
    SharedContextRecord,
)
from mwf.utils import utcnow

SESSION = "sess-1"
ALICE = "alice"
BOB = "bob"

# ---------------------------------------------------------------------------
# Canned completion replies
# ---------------------------------------------------------------------------

ALIGNED_REPLY = {
    "alignment_score": 91,
    "alignment_summary": "The guess captures the exhaustion and the wish to be seen.",
    "gap_severity": "none",
    "gap_summary": "",
    "recommended_action": "proceed",
}

SIGNIFICANT_GAP_REPLY = {
    "alignment_score": 32,
    "alignment_summary": "The guess reads the silence as anger.",
    "gap_severity": "significant",
    "gap_summary": "Missed that the silence comes from exhaustion, not anger.",
    "missed_feelings": ["exhausted", "unseen"],
    "misattributions": ["assumes anger"],
    "most_important_gap": "feeling exhausted and unseen at home",
    "recommended_action": "offer_sharing",
    "suggested_share_focus": "how tired the last months have been",
    "refinement_hint": {
        "area_hint": "work and effort",
        "guidance_type": "explore_deeper_feelings",
        "prompt_seed": "What might sit underneath the quiet evenings?",
    },
}

MINOR_GAP_REPLY = {
    "alignment_score": 70,
    "gap_severity": "minor",
    "gap_summary": "Mostly right, missed some loneliness.",
}

OFFER_REPLY = {
    "suggested_content": "I have been running on empty for months, and when I go quiet it is "
    "because I am tired, not angry with you. Would it help to hear more about that?"
}

SUMMARY_REPLY = {
    "summary": "You both worked hard to see each other clearly, and sharing filled in what was missing. "
    "Next you will look at what each of you needs.",
    "ready_for_next_stage": True,
}


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryTransaction:
    """ReconcilerTransaction over plain lists. Writes are visible immediately."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get_participants(self, session_id: str) -> list[Participant]:
        return [p for p in self.store.participants if p.session_id == session_id]

    async def add_participant(self, participant: Participant) -> None:
        self.store.participants.append(participant)

    async def get_self_report(self, session_id: str, user_id: str) -> SelfReport | None:
        for r in self.store.self_reports:
            if r.session_id == session_id and r.user_id == user_id:
                return r
        return None

    async def add_self_report(self, report: SelfReport) -> None:
        self.store.self_reports.append(report)

    async def get_attempt(self, session_id: str, guesser_id: str, *, lock: bool = False) -> EmpathyAttempt | None:
        for a in self.store.attempts:
            if a.session_id == session_id and a.guesser_id == guesser_id:
                return a
        return None

    async def add_attempt(self, attempt: EmpathyAttempt) -> None:
        self.store.attempts.append(attempt)

    async def list_attempts_by_status(self, status: str) -> list[EmpathyAttempt]:
        return [a for a in self.store.attempts if a.status == status]

    def _direction_results(self, direction: Direction) -> list[ReconciliationResult]:
        return [
            r
            for r in self.store.results
            if r.session_id == direction.session_id
            and r.guesser_id == direction.guesser_id
            and r.subject_id == direction.subject_id
        ]

    async def get_current_result(self, direction: Direction) -> ReconciliationResult | None:
        if self.store.result_read_lag > 0:
            self.store.result_read_lag -= 1
            return None
        for r in self._direction_results(direction):
            if r.superseded_at is None:
                return r
        return None

    async def count_results(self, direction: Direction) -> int:
        return len(self._direction_results(direction))

    async def add_result(self, result: ReconciliationResult) -> None:
        for r in self._direction_results(
            Direction(result.session_id, result.guesser_id, result.subject_id)
        ):
            if r.superseded_at is None:
                r.superseded_at = utcnow()
        self.store.results.append(result)

    async def get_offer_for_result(self, result_id: UUID) -> ShareOffer | None:
        for o in self.store.offers:
            if o.reconciliation_result_id == result_id:
                return o
        return None

    async def get_accepted_offer(self, direction: Direction) -> ShareOffer | None:
        accepted = [
            o
            for o in self.store.offers
            if o.session_id == direction.session_id
            and o.guesser_id == direction.guesser_id
            and o.subject_id == direction.subject_id
            and o.subject_decision == "accepted"
        ]
        return accepted[-1] if accepted else None

    async def add_offer(self, offer: ShareOffer) -> None:
        self.store.offers.append(offer)

    async def get_shared_context(self, session_id: str, from_user_id: str, to_user_id: str) -> SharedContextRecord | None:
        for s in self.store.shared:
            if s.session_id == session_id and s.from_user_id == from_user_id and s.to_user_id == to_user_id:
                return s
        return None

    async def add_shared_context(self, record: SharedContextRecord) -> None:
        self.store.shared.append(record)

    async def add_context_message(self, message: ContextMessage) -> None:
        self.store.messages.append(message)

    async def delete_context_messages(self, session_id: str) -> int:
        before = len(self.store.messages)
        self.store.messages = [m for m in self.store.messages if m.session_id != session_id]
        return before - len(self.store.messages)


class InMemoryStore:
    """ReconcilerStore fake.

    ``result_read_lag`` makes the next N current-result reads miss, which
    simulates a read-after-write visibility gap. Exceptions queued in
    ``fail_next`` are raised when the next transactions open.
    """

    def __init__(self) -> None:
        self.participants: list[Participant] = []
        self.self_reports: list[SelfReport] = []
        self.attempts: list[EmpathyAttempt] = []
        self.results: list[ReconciliationResult] = []
        self.offers: list[ShareOffer] = []
        self.shared: list[SharedContextRecord] = []
        self.messages: list[ContextMessage] = []
        self.result_read_lag = 0
        self.fail_next: list[Exception] = []
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        if self.fail_next:
            raise self.fail_next.pop(0)
        yield InMemoryTransaction(self)

    def attempt(self, guesser_id: str, session_id: str = SESSION) -> EmpathyAttempt | None:
        for a in self.attempts:
            if a.session_id == session_id and a.guesser_id == guesser_id:
                return a
        return None

    def current_results(self, guesser_id: str) -> list[ReconciliationResult]:
        return [r for r in self.results if r.guesser_id == guesser_id and r.superseded_at is None]


# ---------------------------------------------------------------------------
# Completion and publisher doubles
# ---------------------------------------------------------------------------


class ScriptedCompletion:
    """Completion service that answers from a script keyed by operation tag.

    A script entry is a reply dict, an exception instance to raise, or a
    list of those consumed in order (the last one repeats).
    """

    def __init__(self, script: dict[str, Any] | None = None, delay: float = 0.0) -> None:
        self.script: dict[str, Any] = dict(script or {})
        self.delay = delay
        self.calls: list[tuple[str, dict]] = []

    async def complete(self, payload: dict[str, Any], operation_tag: str) -> dict[str, Any]:
        self.calls.append((operation_tag, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        entry = self.script.get(operation_tag)
        if isinstance(entry, list):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if entry is None:
            raise CompletionError(f"no scripted reply for {operation_tag}")
        if isinstance(entry, BaseException):
            raise entry
        return dict(entry)

    def count(self, operation_tag: str) -> int:
        return sum(1 for tag, _ in self.calls if tag == operation_tag)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    async def publish(self, session_id: str, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((session_id, event_name, payload))

    def named(self, event_name: str) -> list[dict]:
        return [payload for _, name, payload in self.events if name == event_name]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values: dict[str, Any] = {
        "DATABASE_URL": "sqlite+aiosqlite://",
        "completion_timeout": 0.5,
        "read_retry_base_delay": 0.001,
        "trigger_retry_delay": 0.001,
        "recover_stalled_on_start": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def reconciler(store, completion, settings) -> DirectionReconciler:
    return DirectionReconciler(
        store,
        GapAnalyzer(completion, settings),
        ShareSuggestionGenerator(completion, settings),
        settings,
    )


@pytest_asyncio.fixture
async def coordinator(store, completion, settings, publisher):
    c = ReconciliationCoordinator(store, settings, completion=completion, publisher=publisher)
    yield c
    await c.close(timeout=2.0)


@pytest.fixture
def seed(store):
    """Populate the in-memory store with the usual two-person session."""

    def _seed(
        *,
        alice_status: str | None = None,
        bob_status: str | None = None,
        alice_report: bool = True,
        bob_report: bool = True,
        session_id: str = SESSION,
    ) -> None:
        now = utcnow()
        for user_id, name in ((ALICE, "Alice"), (BOB, "Bob")):
            store.participants.append(
                Participant(id=uuid4(), session_id=session_id, user_id=user_id, display_name=name, created_at=now)
            )
        reports = {
            ALICE: (alice_report, "I feel dismissed when my ideas get ignored at dinner.", ["dismissed", "lonely"]),
            BOB: (bob_report, "I am exhausted from work and I go quiet because I have nothing left.", ["exhausted"]),
        }
        for user_id, (completed, content, feelings) in reports.items():
            store.self_reports.append(
                SelfReport(
                    id=uuid4(),
                    session_id=session_id,
                    user_id=user_id,
                    content=content,
                    feelings=feelings,
                    completed_at=now if completed else None,
                    updated_at=now,
                )
            )
        guesses = {
            ALICE: (alice_status, BOB, "Bob is angry with me and avoiding me."),
            BOB: (bob_status, ALICE, "Alice feels unheard and lonely when I tune out."),
        }
        for guesser_id, (status, subject_id, statement) in guesses.items():
            if status is None:
                continue
            store.attempts.append(
                EmpathyAttempt(
                    id=uuid4(),
                    session_id=session_id,
                    guesser_id=guesser_id,
                    subject_id=subject_id,
                    guessed_statement=statement,
                    status=status,
                    revision=1,
                    created_at=now,
                    shared_at=None if status == "drafting" else now,
                    updated_at=now,
                )
            )

    return _seed


# ---------------------------------------------------------------------------
# Database fixtures (SQLite via aiosqlite)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database with the full schema."""
    database = Database(make_settings())
    await database.create_schema()
    yield database
    await database.disconnect()
