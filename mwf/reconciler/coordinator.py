"""Session Reconciliation Coordinator.

Receives session events (consent, partner finished Stage 1, resubmission),
schedules reconciliation runs in the background and publishes status
notifications. Runs of one direction are serialized by a per-direction
lock; the two directions of a session run independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from mwf.completion import CompletionService
from mwf.config import Settings
from mwf.reconciler.direction import DirectionReconciler, RunOutcome, offer_view
from mwf.reconciler.errors import InvalidReconcilerInput, InvalidTransition, NotFoundError
from mwf.reconciler.gap_analyzer import GapAnalyzer
from mwf.reconciler.schemas import (
    Direction,
    DirectionDigest,
    EmpathyStatus,
    OfferPending,
    ReconcilerSummary,
    ShareOfferView,
    ShareResponse,
    SummaryContext,
)
from mwf.reconciler.share_suggestion import ShareSuggestionGenerator
from mwf.reconciler.store import ReconcilerStore, ReconcilerTransaction
from mwf.reconciler.summary import SummaryGenerator
from mwf.storage.models import EmpathyAttempt, Participant, SelfReport, ShareOffer
from mwf.utils import utcnow

logger = logging.getLogger(__name__)

# Stage whose completion (by the subject) unblocks the partner's guess
WITNESSING_STAGE = 1

STATUS_UPDATED = "empathy.status_updated"
SHARE_SUGGESTION = "empathy.share_suggestion"
CONTEXT_SHARED = "empathy.context_shared"
REVEALED = "empathy.revealed"

# Sessions remembered as already revealed (oldest forgotten first)
REVEALED_MEMORY = 10_000


class NotificationPublisher(Protocol):
    async def publish(self, session_id: str, event_name: str, payload: dict[str, Any]) -> None: ...


class ReconciliationCoordinator:
    """Entry point for everything the session layer asks of the reconciler."""

    def __init__(
        self,
        store: ReconcilerStore,
        settings: Settings,
        completion: CompletionService | None = None,
        publisher: NotificationPublisher | None = None,
        analyzer: GapAnalyzer | None = None,
        generator: ShareSuggestionGenerator | None = None,
        summarizer: SummaryGenerator | None = None,
    ) -> None:
        if analyzer is None or generator is None or summarizer is None:
            if completion is None:
                raise ValueError("completion service required unless all components are given")
            analyzer = analyzer or GapAnalyzer(completion, settings)
            generator = generator or ShareSuggestionGenerator(completion, settings)
            summarizer = summarizer or SummaryGenerator(completion, settings)

        self._store = store
        self._settings = settings
        self._publisher = publisher
        self.reconciler = DirectionReconciler(store, analyzer, generator, settings)
        self._summarizer = summarizer
        self._locks: dict[Direction, asyncio.Lock] = {}
        self._lock_users: dict[Direction, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self.failed_directions: set[Direction] = set()
        self._revealed: OrderedDict[str, None] = OrderedDict()

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    async def add_participants(self, session_id: str, participants: list[tuple[str, str | None]]) -> list[str]:
        """Register the session's two participants (user_id, display_name).

        Re-registering a known user is a no-op. Returns the participant ids.
        """
        async with self._store.transaction() as tx:
            existing = {p.user_id: p for p in await tx.get_participants(session_id)}
            for user_id, display_name in participants:
                if not user_id:
                    raise InvalidReconcilerInput("user_id is required")
                if user_id in existing:
                    continue
                if len(existing) >= 2:
                    raise InvalidReconcilerInput(f"session {session_id} already has two participants")
                participant = Participant(
                    id=uuid4(),
                    session_id=session_id,
                    user_id=user_id,
                    display_name=display_name,
                    created_at=utcnow(),
                )
                await tx.add_participant(participant)
                existing[user_id] = participant
            return list(existing)

    async def record_self_report(
        self,
        session_id: str,
        user_id: str,
        content: str,
        feelings: list[str] | None = None,
        completed: bool = False,
    ) -> SelfReport:
        """Store (or replace) a user's Stage 1 self-report."""
        if not content or not content.strip():
            raise InvalidReconcilerInput("self-report content is required")

        async with self._store.transaction() as tx:
            await self._partner_of(tx, session_id, user_id)
            now = utcnow()
            report = await tx.get_self_report(session_id, user_id)
            if report is None:
                report = SelfReport(
                    id=uuid4(),
                    session_id=session_id,
                    user_id=user_id,
                    content=content.strip(),
                    feelings=list(feelings or []),
                    completed_at=now if completed else None,
                    updated_at=now,
                )
                await tx.add_self_report(report)
            else:
                report.content = content.strip()
                if feelings is not None:
                    report.feelings = list(feelings)
                if completed and report.completed_at is None:
                    report.completed_at = now
                report.updated_at = now

        if completed:
            await self._trigger_partner_guess(session_id, user_id)
        return report

    # ------------------------------------------------------------------
    # Guesser actions
    # ------------------------------------------------------------------

    async def save_draft(self, session_id: str, user_id: str, statement: str) -> EmpathyAttempt:
        direction = await self._direction_for(session_id, user_id)
        async with self._direction_lock(direction):
            return await self.reconciler.save_draft(direction, statement)

    async def on_consent(self, session_id: str, user_id: str) -> None:
        """The user consented to share their guess: drafting -> held, then reconcile."""
        direction = await self._direction_for(session_id, user_id)
        async with self._direction_lock(direction):
            before = await self._status_of(direction)
            after = await self.reconciler.share(direction)
        await self._publish_change(direction, before, after)

        partner_status = await self._status_of(direction.reversed())
        if partner_status not in (None, "drafting"):
            await self.trigger_both_directions(session_id)
        else:
            await self.trigger_one_direction(session_id, direction.guesser_id, direction.subject_id)

    async def on_partner_stage_completed(self, session_id: str, partner_id: str, stage: int) -> None:
        """The partner finished a stage. Only Stage 1 matters here."""
        if stage != WITNESSING_STAGE:
            logger.debug("Ignoring stage %s completion in session %s", stage, session_id)
            return

        async with self._store.transaction() as tx:
            await self._partner_of(tx, session_id, partner_id)
            report = await tx.get_self_report(session_id, partner_id)
            if report is None:
                raise NotFoundError(f"no self-report for {partner_id} in session {session_id}")
            if report.completed_at is None:
                report.completed_at = utcnow()
                report.updated_at = report.completed_at

        await self._trigger_partner_guess(session_id, partner_id)

    async def on_resubmit(self, session_id: str, guesser_id: str, statement: str) -> None:
        """refining -> analyzing with the new statement, then reconcile."""
        direction = await self._direction_for(session_id, guesser_id)
        async with self._direction_lock(direction):
            before = await self._status_of(direction)
            attempt = await self.reconciler.resubmit(direction, statement)
        await self._publish_change(direction, before, attempt.status)
        await self.trigger_one_direction(session_id, direction.guesser_id, direction.subject_id)

    # ------------------------------------------------------------------
    # Subject actions
    # ------------------------------------------------------------------

    async def get_share_offer(self, session_id: str, subject_id: str) -> ShareOfferView | OfferPending | None:
        """The offer waiting for the subject, generated on first need."""
        direction = (await self._direction_for(session_id, subject_id)).reversed()
        async with self._direction_lock(direction):
            found = await self.reconciler.get_share_offer(direction)
        if isinstance(found, ShareOffer):
            return offer_view(found)
        return found

    async def respond_to_share_offer(
        self, session_id: str, subject_id: str, action: str, content: str | None = None
    ) -> ShareResponse:
        direction = (await self._direction_for(session_id, subject_id)).reversed()
        async with self._direction_lock(direction):
            before = await self._status_of(direction)
            response = await self.reconciler.apply_subject_decision(direction, action, content)

        if response.status == "accepted":
            await self._publish(
                session_id,
                CONTEXT_SHARED,
                {
                    "for_user_id": direction.guesser_id,
                    "shared_by": direction.subject_id,
                    "content": response.shared_content,
                },
            )
        await self._publish_change(direction, before, response.guesser_status)
        return response

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self, session_id: str, user_id: str) -> EmpathyStatus:
        """Both directions from the user's point of view. Read-only."""
        async with self._store.transaction() as tx:
            partner_id = await self._partner_of(tx, session_id, user_id)
            mine = Direction(session_id, user_id, partner_id)
            theirs = mine.reversed()
            my_view = await self.reconciler.describe(tx, mine)
            partner_view = await self.reconciler.describe(tx, theirs)
            pending = await self.reconciler.pending_offer_view(tx, theirs)

        # The hint is guidance for the partner, not for this user
        partner_view = partner_view.model_copy(update={"refinement_hint": None})
        return EmpathyStatus(
            session_id=session_id,
            user_id=user_id,
            partner_id=partner_id,
            my_direction=my_view,
            partner_direction=partner_view,
            pending_share_offer=pending,
            ready_for_next_stage=my_view.status == "ready" and partner_view.status == "ready",
        )

    async def generate_summary(self, session_id: str, user_id: str | None = None) -> ReconcilerSummary | None:
        """Closing summary of the exchange, once both directions are ready.

        Raises InvalidTransition while either direction is still open.
        Returns None when the summary cannot be generated right now.
        """
        async with self._store.transaction() as tx:
            first, second = await self._participant_ids(tx, session_id)
            if user_id is not None and user_id not in (first, second):
                raise NotFoundError(f"{user_id} is not a participant of session {session_id}")
            names = {p.user_id: p.display_name or p.user_id for p in await tx.get_participants(session_id)}

            digests: list[DirectionDigest] = []
            shared = False
            for direction in (Direction(session_id, first, second), Direction(session_id, second, first)):
                attempt = await tx.get_attempt(session_id, direction.guesser_id)
                if attempt is None or attempt.status != "ready":
                    raise InvalidTransition("generate the summary", attempt.status if attempt else None)
                result = await tx.get_current_result(direction)
                if result is None:
                    logger.warning("No visible result for %s; summary unavailable", direction)
                    return None
                alignment = (result.raw_analysis or {}).get("alignment_summary")
                digests.append(
                    DirectionDigest(
                        guesser_name=names[direction.guesser_id],
                        subject_name=names[direction.subject_id],
                        alignment_score=result.alignment_score,
                        alignment_summary=alignment if isinstance(alignment, str) else result.gap_summary or "",
                        gap_severity=result.gap_severity,
                    )
                )
                if await tx.get_accepted_offer(direction) is not None:
                    shared = True

        return await self._summarizer.generate(
            SummaryContext(first=digests[0], second=digests[1], additional_sharing_occurred=shared)
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def trigger_both_directions(self, session_id: str) -> None:
        """Schedule a run for both directions of the session and return."""
        async with self._store.transaction() as tx:
            first, second = await self._participant_ids(tx, session_id)
        self._spawn(self._run_guarded(Direction(session_id, first, second)))
        self._spawn(self._run_guarded(Direction(session_id, second, first)))

    async def trigger_one_direction(self, session_id: str, guesser_id: str, subject_id: str) -> None:
        """Schedule a run for one direction and return."""
        if not guesser_id or not subject_id or guesser_id == subject_id:
            raise InvalidReconcilerInput("a direction needs two distinct users")
        self._spawn(self._run_guarded(Direction(session_id, guesser_id, subject_id)))

    async def run_direction(self, direction: Direction) -> RunOutcome:
        """Run one direction now, under its lock, and publish what changed."""
        return await self._run_once(direction, {})

    async def _run_once(self, direction: Direction, baseline: dict[str, str | None]) -> RunOutcome:
        """One try of a run.

        ``baseline["before"]`` is the status seen by the first try of the
        trigger. A retry compares against it, so a change committed by a
        try that failed afterwards is still announced.
        """
        async with self._direction_lock(direction):
            if "before" not in baseline:
                baseline["before"] = await self._status_of(direction)
            outcome = await self.reconciler.run(direction)

        before = baseline["before"]
        baseline["before"] = outcome.status
        if outcome.status == "awaiting_sharing" and before != "awaiting_sharing":
            offer = outcome.offer if isinstance(outcome.offer, ShareOffer) else None
            await self._publish(
                direction.session_id,
                SHARE_SUGGESTION,
                {
                    "for_user_id": direction.subject_id,
                    "guesser_id": direction.guesser_id,
                    "offer_id": str(offer.id) if offer else None,
                    "preparing": offer is None,
                },
            )
        await self._publish_change(direction, before, outcome.status)
        return outcome

    async def _run_guarded(self, direction: Direction) -> None:
        """Background body of a trigger: retries persistence errors, never raises."""
        attempts = 1 + self._settings.trigger_retry_attempts
        baseline: dict[str, str | None] = {}
        for n in range(1, attempts + 1):
            try:
                await self._run_once(direction, baseline)
            except SQLAlchemyError:
                if n == attempts:
                    logger.exception(
                        "Reconciliation of %s failed after %d attempts, left for recovery",
                        direction,
                        n,
                    )
                    self.failed_directions.add(direction)
                    return
                logger.warning("Persistence error reconciling %s (attempt %d/%d), retrying", direction, n, attempts)
                await asyncio.sleep(self._settings.trigger_retry_delay * n)
            except Exception:
                logger.exception("Reconciliation of %s failed", direction)
                self.failed_directions.add(direction)
                return
            else:
                self.failed_directions.discard(direction)
                return

    async def recover_stalled(self) -> int:
        """Re-trigger directions interrupted mid-run or whose last run failed."""
        directions = set(self.failed_directions)
        async with self._store.transaction() as tx:
            for status in ("held", "analyzing"):
                for attempt in await tx.list_attempts_by_status(status):
                    directions.add(Direction(attempt.session_id, attempt.guesser_id, attempt.subject_id))

        for direction in directions:
            self._spawn(self._run_guarded(direction))
        if directions:
            logger.info("Re-triggered %d stalled direction(s)", len(directions))
        return len(directions)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait until every scheduled run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, timeout: float = 10.0) -> None:
        try:
            await asyncio.wait_for(self.wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Cancelling %d unfinished reconciliation run(s)", len(self._tasks))
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _publish_change(self, direction: Direction, before: str | None, after: str | None) -> None:
        if after is None or after == before:
            return
        await self._publish(
            direction.session_id,
            STATUS_UPDATED,
            {
                "guesser_id": direction.guesser_id,
                "subject_id": direction.subject_id,
                "status": after,
                "previous": before,
            },
        )
        if after != "ready" or direction.session_id in self._revealed:
            return
        if await self._status_of(direction.reversed()) != "ready":
            return
        # Both runs may get this far; only the first claim announces
        if not self._claim_reveal(direction.session_id):
            return
        await self._publish(
            direction.session_id,
            REVEALED,
            {"user_ids": [direction.guesser_id, direction.subject_id]},
        )

    def _claim_reveal(self, session_id: str) -> bool:
        if session_id in self._revealed:
            return False
        self._revealed[session_id] = None
        if len(self._revealed) > REVEALED_MEMORY:
            self._revealed.popitem(last=False)
        return True

    async def _publish(self, session_id: str, event_name: str, payload: dict[str, Any]) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(session_id, event_name, payload)
        except Exception:
            logger.warning("Failed to publish %s for session %s", event_name, session_id, exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _direction_lock(self, direction: Direction) -> AsyncIterator[None]:
        """Per-direction mutex, forgotten once nobody holds or waits for it."""
        lock = self._locks.get(direction)
        if lock is None:
            lock = self._locks[direction] = asyncio.Lock()
        self._lock_users[direction] = self._lock_users.get(direction, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[direction] -= 1
            if not self._lock_users[direction]:
                del self._lock_users[direction]
                del self._locks[direction]

    async def _trigger_partner_guess(self, session_id: str, subject_id: str) -> None:
        """The subject's report is complete: reconcile the partner's guess about them."""
        direction = (await self._direction_for(session_id, subject_id)).reversed()
        await self.trigger_one_direction(session_id, direction.guesser_id, direction.subject_id)

    async def _status_of(self, direction: Direction) -> str | None:
        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id)
        return attempt.status if attempt else None

    async def _direction_for(self, session_id: str, guesser_id: str) -> Direction:
        async with self._store.transaction() as tx:
            partner_id = await self._partner_of(tx, session_id, guesser_id)
        return Direction(session_id, guesser_id, partner_id)

    @staticmethod
    async def _participant_ids(tx: ReconcilerTransaction, session_id: str) -> tuple[str, str]:
        participants = await tx.get_participants(session_id)
        if not participants:
            raise NotFoundError(f"unknown session {session_id}")
        if len(participants) != 2:
            raise InvalidReconcilerInput(f"session {session_id} needs exactly two participants")
        return participants[0].user_id, participants[1].user_id

    async def _partner_of(self, tx: ReconcilerTransaction, session_id: str, user_id: str) -> str:
        first, second = await self._participant_ids(tx, session_id)
        if user_id == first:
            return second
        if user_id == second:
            return first
        raise NotFoundError(f"{user_id} is not a participant of session {session_id}")
