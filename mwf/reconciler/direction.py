"""Direction Reconciler: the per-direction empathy state machine.

One direction is one (guesser, subject) pair of a session. Its state
lives on the guesser's EmpathyAttempt:

    drafting -> held -> analyzing -> ready
                            |
                            +-> awaiting_sharing -> refining -> analyzing
                                      |
                                      +-> ready (subject declines)

A run is split into three steps so that no database transaction is held
open across a completion call:

1. mark the attempt ``analyzing`` once the subject's self-report exists;
2. run the gap analysis (completion call, no transaction);
3. persist the result and decide the next status in one transaction.
   The anti-loop guard (has the subject already shared context with this
   guesser?) is read in that same transaction, before ``awaiting_sharing``
   is ever written.

When the direction ends up in ``awaiting_sharing`` the in-memory analysis
goes straight to the share-suggestion generator; persistence is read back
only to attach the offer, through a bounded retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from uuid import UUID, uuid4

from mwf.config import Settings
from mwf.reconciler.errors import InvalidReconcilerInput, InvalidTransition, NotFoundError
from mwf.reconciler.gap_analyzer import GapAnalyzer
from mwf.reconciler.schemas import (
    ConversationContext,
    Direction,
    DirectionView,
    GapAnalysis,
    OfferPending,
    RefinementHint,
    ShareOfferView,
    ShareResponse,
    SubjectContext,
)
from mwf.reconciler.share_suggestion import ShareSuggestionGenerator
from mwf.reconciler.store import ReconcilerStore, ReconcilerTransaction
from mwf.storage.models import (
    ContextMessage,
    EmpathyAttempt,
    ReconciliationResult,
    ShareOffer,
    SharedContextRecord,
)
from mwf.utils import utcnow

logger = logging.getLogger(__name__)

# Statuses from which a trigger may start (or resume) an analysis
RUNNABLE_STATUSES = frozenset({"held", "analyzing"})


@dataclass
class RunOutcome:
    """What one reconciler run did. Used for notifications and tests."""

    direction: Direction
    status: str | None
    analysis: GapAnalysis | None = None
    result_id: UUID | None = None
    guarded: bool = False
    capped: bool = False
    offer: ShareOffer | OfferPending | None = None

    @property
    def ran_analysis(self) -> bool:
        return self.analysis is not None


@dataclass
class _RunInput:
    revision: int
    statement: str
    self_report: str
    context: ConversationContext
    subject_context: SubjectContext


class DirectionReconciler:
    """Owns the lifecycle of one guesser->subject direction."""

    def __init__(
        self,
        store: ReconcilerStore,
        analyzer: GapAnalyzer,
        generator: ShareSuggestionGenerator,
        settings: Settings,
    ) -> None:
        self._store = store
        self._analyzer = analyzer
        self._generator = generator
        self._settings = settings

    # ------------------------------------------------------------------
    # Guesser actions
    # ------------------------------------------------------------------

    async def save_draft(self, direction: Direction, statement: str) -> EmpathyAttempt:
        """Create or update the guesser's draft. Only allowed while drafting."""
        if not statement or not statement.strip():
            raise InvalidReconcilerInput("guessed_statement is required")

        now = utcnow()
        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id, lock=True)
            if attempt is None:
                attempt = EmpathyAttempt(
                    id=uuid4(),
                    session_id=direction.session_id,
                    guesser_id=direction.guesser_id,
                    subject_id=direction.subject_id,
                    guessed_statement=statement.strip(),
                    status="drafting",
                    revision=1,
                    created_at=now,
                    shared_at=None,
                    updated_at=now,
                )
                await tx.add_attempt(attempt)
                return attempt

            self._check_direction(attempt, direction)
            if attempt.status != "drafting":
                raise InvalidTransition("edit the draft", attempt.status)
            attempt.guessed_statement = statement.strip()
            attempt.updated_at = now
            return attempt

    async def share(self, direction: Direction) -> str:
        """drafting -> held. Sharing twice is a no-op; returns the current status."""
        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id, lock=True)
            if attempt is None:
                raise NotFoundError(f"no empathy draft to share for {direction}")
            self._check_direction(attempt, direction)
            if attempt.status != "drafting":
                return attempt.status
            now = utcnow()
            attempt.status = "held"
            attempt.shared_at = now
            attempt.updated_at = now
            logger.info("Empathy attempt shared for %s", direction)
            return attempt.status

    async def resubmit(self, direction: Direction, statement: str) -> EmpathyAttempt:
        """refining -> analyzing with a new revision of the guess."""
        if not statement or not statement.strip():
            raise InvalidReconcilerInput("guessed_statement is required")

        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id, lock=True)
            if attempt is None or attempt.status != "refining":
                raise InvalidTransition("resubmit", attempt.status if attempt else None)
            self._check_direction(attempt, direction)
            attempt.guessed_statement = statement.strip()
            attempt.revision += 1
            attempt.status = "analyzing"
            attempt.updated_at = utcnow()
            logger.info("Empathy attempt resubmitted for %s (revision %d)", direction, attempt.revision)
            return attempt

    # ------------------------------------------------------------------
    # Reconciliation run
    # ------------------------------------------------------------------

    async def run(self, direction: Direction) -> RunOutcome:
        """Advance the direction as far as its inputs allow.

        A no-op (returns the current status) unless the attempt is held or
        analyzing. Callers serialize runs of the same direction.
        """
        async with self._store.transaction() as tx:
            prepared = await self._prepare(tx, direction)
        if isinstance(prepared, RunOutcome):
            return prepared

        analysis = await self._analyzer.analyze(prepared.statement, prepared.self_report, prepared.context)

        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id, lock=True)
            if attempt is None or attempt.status != "analyzing" or attempt.revision != prepared.revision:
                logger.info("Discarding stale analysis for %s (revision %d)", direction, prepared.revision)
                return RunOutcome(direction, attempt.status if attempt else None)

            cycle = await tx.count_results(direction) + 1
            now = utcnow()
            result = ReconciliationResult(
                id=uuid4(),
                session_id=direction.session_id,
                guesser_id=direction.guesser_id,
                subject_id=direction.subject_id,
                gap_severity=analysis.gap_severity,
                recommended_action=analysis.recommended_action,
                raw_analysis=analysis.raw_analysis,
                alignment_score=analysis.alignment_score,
                gap_summary=analysis.gap_summary,
                degraded=analysis.degraded,
                cycle=cycle,
                created_at=now,
                superseded_at=None,
            )
            await tx.add_result(result)

            status, guarded, capped = await self._decide(tx, direction, analysis, cycle)
            attempt.status = status
            attempt.updated_at = now

        logger.info(
            "Reconciled %s: severity=%s action=%s -> %s%s%s",
            direction,
            analysis.gap_severity,
            analysis.recommended_action,
            status,
            " (guarded)" if guarded else "",
            " (capped)" if capped else "",
        )
        outcome = RunOutcome(
            direction,
            status,
            analysis=analysis,
            result_id=result.id,
            guarded=guarded,
            capped=capped,
        )
        if status == "awaiting_sharing":
            outcome.offer = await self._prepare_offer(direction, result.id, analysis, prepared.subject_context)
        return outcome

    async def _prepare(
        self, tx: ReconcilerTransaction, direction: Direction
    ) -> _RunInput | RunOutcome:
        attempt = await tx.get_attempt(direction.session_id, direction.guesser_id, lock=True)
        if attempt is None or attempt.status not in RUNNABLE_STATUSES:
            return RunOutcome(direction, attempt.status if attempt else None)
        self._check_direction(attempt, direction)

        report = await tx.get_self_report(direction.session_id, direction.subject_id)
        if report is None or report.completed_at is None:
            logger.info("Holding %s until the subject's self-report is complete", direction)
            return RunOutcome(direction, attempt.status)

        attempt.status = "analyzing"
        attempt.updated_at = utcnow()

        names = await self._display_names(tx, direction.session_id)
        accepted = await tx.get_accepted_offer(direction)
        guesser_name = names.get(direction.guesser_id)
        subject_name = names.get(direction.subject_id)
        return _RunInput(
            revision=attempt.revision,
            statement=attempt.guessed_statement,
            self_report=report.content,
            context=ConversationContext(
                guesser_name=guesser_name,
                subject_name=subject_name,
                subject_feelings=list(report.feelings or []),
                shared_context=accepted.shared_content if accepted else None,
                revision=attempt.revision,
            ),
            subject_context=SubjectContext(
                subject_name=subject_name,
                guesser_name=guesser_name,
                self_report=report.content,
            ),
        )

    async def _decide(
        self,
        tx: ReconcilerTransaction,
        direction: Direction,
        analysis: GapAnalysis,
        cycle: int,
    ) -> tuple[str, bool, bool]:
        """Return (status, guarded, capped) for a fresh analysis."""
        if not analysis.needs_sharing:
            return "ready", False, False

        if cycle > self._settings.max_analysis_cycles:
            logger.warning(
                "Analysis cycle cap (%d) reached for %s, forcing ready",
                self._settings.max_analysis_cycles,
                direction,
            )
            return "ready", False, True

        # Anti-loop guard: the subject already shared context with this guesser
        record = await tx.get_shared_context(direction.session_id, direction.subject_id, direction.guesser_id)
        if record is not None:
            logger.info("Context already shared for %s, marking ready without another offer", direction)
            return "ready", True, False

        return "awaiting_sharing", False, False

    # ------------------------------------------------------------------
    # Share offers
    # ------------------------------------------------------------------

    async def _prepare_offer(
        self,
        direction: Direction,
        result_id: UUID,
        analysis: GapAnalysis,
        subject_context: SubjectContext,
    ) -> ShareOffer | OfferPending | None:
        suggestion = await self._generator.generate(analysis, subject_context)
        if suggestion is None:
            logger.warning("No share suggestion for %s yet; offer stays in preparation", direction)
            return OfferPending(reason="suggestion not generated yet")
        return await self._attach_offer(direction, result_id, suggestion.suggested_content)

    async def _attach_offer(
        self, direction: Direction, result_id: UUID, content: str
    ) -> ShareOffer | OfferPending | None:
        """Persist the offer for the direction's current result.

        Returns None if the result was superseded or the direction moved on
        in the meantime.
        """
        result = await self.load_current_result(direction)
        if result is None:
            logger.warning(
                "Result for %s not visible after %d reads; offer recoverable on next query",
                direction,
                self._settings.read_retry_attempts,
            )
            return OfferPending(reason="result not visible yet")
        if result.id != result_id:
            logger.info("Result for %s was superseded; dropping offer", direction)
            return None

        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id, lock=True)
            if attempt is None or attempt.status != "awaiting_sharing":
                return None
            offer = await tx.get_offer_for_result(result.id)
            if offer is None:
                offer = ShareOffer(
                    id=uuid4(),
                    reconciliation_result_id=result.id,
                    session_id=direction.session_id,
                    subject_id=direction.subject_id,
                    guesser_id=direction.guesser_id,
                    suggested_content=content,
                    subject_decision="pending",
                    shared_content=None,
                    created_at=utcnow(),
                    decided_at=None,
                )
                await tx.add_offer(offer)
            elif not offer.suggested_content:
                offer.suggested_content = content
            logger.info("Share offer ready for %s", direction)
            return offer

    async def load_current_result(self, direction: Direction) -> ReconciliationResult | None:
        """Read the direction's current result, retrying with backoff.

        Only a fallback for read-after-write visibility gaps; each attempt
        uses a fresh transaction.
        """
        attempts = self._settings.read_retry_attempts
        for n in range(1, attempts + 1):
            async with self._store.transaction() as tx:
                result = await tx.get_current_result(direction)
            if result is not None:
                if n > 1:
                    logger.info("Result for %s visible after %d reads", direction, n)
                return result
            if n < attempts:
                await asyncio.sleep(self._settings.read_retry_base_delay * 2 ** (n - 1))
        return None

    async def get_share_offer(self, direction: Direction) -> ShareOffer | OfferPending | None:
        """Offer for the subject to look at, generating it on first need.

        None when the direction is not awaiting sharing.
        """
        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id)
            if attempt is None or attempt.status != "awaiting_sharing":
                return None
            report = await tx.get_self_report(direction.session_id, direction.subject_id)
            names = await self._display_names(tx, direction.session_id)

        result = await self.load_current_result(direction)
        if result is None:
            return OfferPending(reason="result not visible yet")

        async with self._store.transaction() as tx:
            offer = await tx.get_offer_for_result(result.id)
        if offer is not None and offer.suggested_content:
            return offer

        subject_context = SubjectContext(
            subject_name=names.get(direction.subject_id),
            guesser_name=names.get(direction.guesser_id),
            self_report=report.content if report else "",
        )
        return await self._prepare_offer(direction, result.id, analysis_from_result(result), subject_context)

    # ------------------------------------------------------------------
    # Subject decisions
    # ------------------------------------------------------------------

    async def apply_subject_decision(
        self, direction: Direction, action: str, content: str | None = None
    ) -> ShareResponse:
        """Record the subject's answer to the share offer.

        accept/refine: deliver the context, record the share once, guesser -> refining.
        decline: guesser -> ready, nothing recorded.
        """
        if action not in ("accept", "decline", "refine"):
            raise InvalidReconcilerInput(f"unknown share action: {action!r}")
        if action == "refine" and not (content and content.strip()):
            raise InvalidReconcilerInput("refine requires the edited content")

        async with self._store.transaction() as tx:
            attempt = await tx.get_attempt(direction.session_id, direction.guesser_id, lock=True)
            if attempt is None or attempt.status != "awaiting_sharing":
                raise InvalidTransition("respond to a share offer", attempt.status if attempt else None)
            result = await tx.get_current_result(direction)
            if result is None:
                raise NotFoundError(f"no reconciliation result for {direction}")

            now = utcnow()
            offer = await tx.get_offer_for_result(result.id)
            if offer is not None and offer.subject_decision != "pending":
                raise InvalidTransition("respond to a share offer", f"offer {offer.subject_decision}")

            shared = ""
            if action != "decline":
                suggested = offer.suggested_content if offer is not None else None
                shared = (content or "").strip() or (suggested or "").strip()
                if not shared:
                    raise InvalidReconcilerInput("nothing to share: the offer is still being prepared")

            if offer is None:
                offer = ShareOffer(
                    id=uuid4(),
                    reconciliation_result_id=result.id,
                    session_id=direction.session_id,
                    subject_id=direction.subject_id,
                    guesser_id=direction.guesser_id,
                    suggested_content=None,
                    subject_decision="pending",
                    shared_content=None,
                    created_at=now,
                    decided_at=None,
                )
                await tx.add_offer(offer)

            if action == "decline":
                offer.subject_decision = "declined"
                offer.decided_at = now
                attempt.status = "ready"
                attempt.updated_at = now
                logger.info("Subject declined to share for %s", direction)
                return ShareResponse(status="declined", shared_content=None, guesser_status="ready")

            offer.subject_decision = "accepted"
            offer.shared_content = shared
            offer.decided_at = now
            await tx.add_context_message(
                ContextMessage(
                    id=uuid4(),
                    session_id=direction.session_id,
                    sender_id=direction.subject_id,
                    for_user_id=direction.guesser_id,
                    content=shared,
                    created_at=now,
                )
            )
            existing = await tx.get_shared_context(direction.session_id, direction.subject_id, direction.guesser_id)
            if existing is None:
                await tx.add_shared_context(
                    SharedContextRecord(
                        id=uuid4(),
                        session_id=direction.session_id,
                        from_user_id=direction.subject_id,
                        to_user_id=direction.guesser_id,
                        shared_at=now,
                    )
                )
            attempt.status = "refining"
            attempt.updated_at = now
            logger.info("Subject shared context for %s", direction)
            return ShareResponse(status="accepted", shared_content=shared, guesser_status="refining")

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def describe(self, tx: ReconcilerTransaction, direction: Direction) -> DirectionView:
        """Derive the direction's status from persisted rows. No writes."""
        attempt = await tx.get_attempt(direction.session_id, direction.guesser_id)
        if attempt is None:
            return DirectionView(
                guesser_id=direction.guesser_id,
                subject_id=direction.subject_id,
                status="drafting",
            )

        fields: dict = {
            "guesser_id": direction.guesser_id,
            "subject_id": direction.subject_id,
            "status": attempt.status,
            "has_attempt": True,
            "revision": attempt.revision,
        }
        result = await tx.get_current_result(direction)
        if result is not None:
            fields.update(
                gap_severity=result.gap_severity,
                recommended_action=result.recommended_action,
                analyzed_at=result.created_at,
                degraded=result.degraded,
            )
            if attempt.status == "refining":
                hint = (result.raw_analysis or {}).get("refinement_hint")
                if isinstance(hint, dict):
                    fields["refinement_hint"] = RefinementHint.model_validate(hint)

        if attempt.status == "awaiting_sharing":
            offer = await tx.get_offer_for_result(result.id) if result is not None else None
            fields["offer_preparing"] = offer is None or not offer.suggested_content

        record = await tx.get_shared_context(direction.session_id, direction.subject_id, direction.guesser_id)
        if record is not None:
            accepted = await tx.get_accepted_offer(direction)
            fields["has_shared_context"] = True
            fields["shared_context"] = accepted.shared_content if accepted else None

        return DirectionView(**fields)

    async def pending_offer_view(
        self, tx: ReconcilerTransaction, direction: Direction
    ) -> ShareOfferView | None:
        """The subject's pending offer, if one has content. No writes."""
        attempt = await tx.get_attempt(direction.session_id, direction.guesser_id)
        if attempt is None or attempt.status != "awaiting_sharing":
            return None
        result = await tx.get_current_result(direction)
        if result is None:
            return None
        offer = await tx.get_offer_for_result(result.id)
        if offer is None or offer.subject_decision != "pending" or not offer.suggested_content:
            return None
        return offer_view(offer, result.gap_summary)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_direction(attempt: EmpathyAttempt, direction: Direction) -> None:
        if attempt.subject_id != direction.subject_id:
            raise InvalidReconcilerInput(
                f"attempt {attempt.id} targets {attempt.subject_id}, not {direction.subject_id}"
            )

    @staticmethod
    async def _display_names(tx: ReconcilerTransaction, session_id: str) -> dict[str, str]:
        participants = await tx.get_participants(session_id)
        return {p.user_id: p.display_name for p in participants if p.display_name}


def analysis_from_result(result: ReconciliationResult) -> GapAnalysis:
    """Rebuild a GapAnalysis from its persisted row."""
    raw = result.raw_analysis or {}
    hint = raw.get("refinement_hint")
    return GapAnalysis(
        gap_severity=result.gap_severity,
        recommended_action=result.recommended_action,
        raw_analysis=raw,
        alignment_score=result.alignment_score,
        gap_summary=result.gap_summary,
        most_important_gap=raw.get("most_important_gap"),
        suggested_share_focus=raw.get("suggested_share_focus"),
        refinement_hint=RefinementHint.model_validate(hint) if isinstance(hint, dict) else None,
        degraded=result.degraded,
    )


def offer_view(offer: ShareOffer, gap_summary: str | None = None) -> ShareOfferView:
    return ShareOfferView(
        offer_id=offer.id,
        guesser_id=offer.guesser_id,
        subject_id=offer.subject_id,
        suggested_content=offer.suggested_content,
        subject_decision=offer.subject_decision,
        gap_summary=gap_summary,
        created_at=offer.created_at,
    )
