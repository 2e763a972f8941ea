"""Tests for the Session Reconciliation Coordinator.

Background triggers, per-direction serialization, status notifications,
retry of persistence errors and the read-only status view.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import pytest
from sqlalchemy.exc import OperationalError

from conftest import (
    ALICE,
    ALIGNED_REPLY,
    BOB,
    OFFER_REPLY,
    SESSION,
    SIGNIFICANT_GAP_REPLY,
    SUMMARY_REPLY,
    RecordingPublisher,
    ScriptedCompletion,
)
import mwf.reconciler.coordinator as coordinator_module
from mwf.completion import GAP_ANALYSIS_TAG, SHARE_OFFER_TAG, SUMMARY_TAG, CompletionError
from mwf.reconciler.coordinator import (
    CONTEXT_SHARED,
    REVEALED,
    SHARE_SUGGESTION,
    STATUS_UPDATED,
    ReconciliationCoordinator,
)
from mwf.reconciler.errors import InvalidReconcilerInput, InvalidTransition, NotFoundError
from mwf.reconciler.schemas import Direction, OfferPending, ShareOfferView

ALICE_GUESSES_BOB = Direction(SESSION, ALICE, BOB)
BOB_GUESSES_ALICE = Direction(SESSION, BOB, ALICE)


def _db_down() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


def _yield_on_transaction(store, monkeypatch) -> None:
    """Make every transaction hand control to the event loop first, like a real driver."""
    original = store.transaction

    @asynccontextmanager
    async def transaction():
        await asyncio.sleep(0)
        async with original() as tx:
            yield tx

    monkeypatch.setattr(store, "transaction", transaction)


class PerGuessCompletion(ScriptedCompletion):
    """Fails the gap analysis whose prompt contains a marker."""

    def __init__(self, failing_marker: str) -> None:
        super().__init__({GAP_ANALYSIS_TAG: ALIGNED_REPLY})
        self.failing_marker = failing_marker

    async def complete(self, payload: dict[str, Any], operation_tag: str) -> dict[str, Any]:
        if self.failing_marker in payload.get("prompt", ""):
            self.calls.append((operation_tag, payload))
            raise CompletionError("scripted failure")
        return await super().complete(payload, operation_tag)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class TestTriggers:
    async def test_trigger_returns_before_analysis(self, store, settings, seed, publisher):
        seed(alice_status="held")
        slow = ScriptedCompletion({GAP_ANALYSIS_TAG: ALIGNED_REPLY}, delay=0.1)
        coordinator = ReconciliationCoordinator(store, settings, completion=slow, publisher=publisher)

        result = await coordinator.trigger_one_direction(SESSION, ALICE, BOB)

        assert result is None
        assert store.attempt(ALICE).status in ("held", "analyzing")
        await coordinator.wait_idle()
        assert store.attempt(ALICE).status == "ready"

    async def test_trigger_both_directions(self, coordinator, store, completion, seed):
        seed(alice_status="held", bob_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "ready"
        assert store.attempt(BOB).status == "ready"

    async def test_directions_are_independent(self, store, settings, seed, publisher):
        """One direction failing its analysis does not hold up the other."""
        seed(alice_status="held", bob_status="held", alice_report=False)
        completion = PerGuessCompletion(failing_marker="Alice feels unheard")
        coordinator = ReconciliationCoordinator(store, settings, completion=completion, publisher=publisher)

        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        # Alice's report is missing: Bob's guess about Alice waits
        assert store.attempt(BOB).status == "held"
        # Alice's guess about Bob went through
        assert store.attempt(ALICE).status == "ready"

    async def test_failed_analysis_in_one_direction_only(self, store, settings, seed, publisher):
        seed(alice_status="held", bob_status="held")
        completion = PerGuessCompletion(failing_marker="Alice feels unheard")
        coordinator = ReconciliationCoordinator(store, settings, completion=completion, publisher=publisher)

        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        bob_result = next(r for r in store.results if r.guesser_id == BOB)
        alice_result = next(r for r in store.results if r.guesser_id == ALICE)
        assert bob_result.degraded
        assert not alice_result.degraded

    async def test_invalid_direction(self, coordinator):
        with pytest.raises(InvalidReconcilerInput):
            await coordinator.trigger_one_direction(SESSION, ALICE, ALICE)

    async def test_unknown_session(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.trigger_both_directions("nope")

    async def test_overlapping_runs_serialize(self, store, settings, seed, publisher):
        seed(alice_status="held")
        slow = ScriptedCompletion({GAP_ANALYSIS_TAG: ALIGNED_REPLY}, delay=0.05)
        coordinator = ReconciliationCoordinator(store, settings, completion=slow, publisher=publisher)

        first, second = await asyncio.gather(
            coordinator.run_direction(ALICE_GUESSES_BOB),
            coordinator.run_direction(ALICE_GUESSES_BOB),
        )

        assert slow.count(GAP_ANALYSIS_TAG) == 1
        assert len(store.results) == 1
        assert {first.ran_analysis, second.ran_analysis} == {True, False}
        assert second.status == "ready"


# ---------------------------------------------------------------------------
# Session events
# ---------------------------------------------------------------------------


class TestSessionEvents:
    async def test_consent_holds_and_reconciles(self, coordinator, store, completion, seed, publisher):
        seed(alice_status="drafting")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        await coordinator.on_consent(SESSION, ALICE)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "ready"
        statuses = [e["status"] for e in publisher.named(STATUS_UPDATED)]
        assert statuses == ["held", "ready"]

    async def test_consent_while_subject_still_witnessing(self, coordinator, store, completion, seed):
        seed(alice_status="drafting", bob_report=False)
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        await coordinator.on_consent(SESSION, ALICE)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "held"
        assert completion.calls == []

    async def test_partner_stage_completion_unblocks(self, coordinator, store, completion, seed):
        seed(alice_status="held", bob_report=False)
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        await coordinator.on_partner_stage_completed(SESSION, BOB, 1)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "ready"

    async def test_other_stages_ignored(self, coordinator, store, completion, seed):
        seed(alice_status="held", bob_report=False)
        await coordinator.on_partner_stage_completed(SESSION, BOB, 2)
        await coordinator.wait_idle()
        assert store.attempt(ALICE).status == "held"
        assert completion.calls == []

    async def test_completed_self_report_triggers(self, coordinator, store, completion, seed):
        seed(alice_status="held", bob_report=False)
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        report = await coordinator.record_self_report(SESSION, BOB, "Worn out.", ["tired"], completed=True)
        await coordinator.wait_idle()

        assert report.completed_at is not None
        assert store.attempt(ALICE).status == "ready"

    async def test_full_refinement_loop(self, coordinator, store, completion, seed, publisher):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = SIGNIFICANT_GAP_REPLY
        completion.script[SHARE_OFFER_TAG] = OFFER_REPLY

        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()
        assert store.attempt(ALICE).status == "awaiting_sharing"
        assert publisher.named(SHARE_SUGGESTION)[0]["for_user_id"] == BOB

        offer = await coordinator.get_share_offer(SESSION, BOB)
        assert isinstance(offer, ShareOfferView)
        assert offer.suggested_content == OFFER_REPLY["suggested_content"]

        response = await coordinator.respond_to_share_offer(SESSION, BOB, "accept")
        assert response.guesser_status == "refining"
        assert publisher.named(CONTEXT_SHARED)[0]["for_user_id"] == ALICE

        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        await coordinator.on_resubmit(SESSION, ALICE, "Bob is worn out, not angry.")
        await coordinator.wait_idle()
        assert store.attempt(ALICE).status == "ready"

    async def test_share_offer_still_preparing(self, coordinator, store, completion, seed):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = SIGNIFICANT_GAP_REPLY
        completion.script[SHARE_OFFER_TAG] = CompletionError("busy")

        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()

        found = await coordinator.get_share_offer(SESSION, BOB)
        assert isinstance(found, OfferPending)

    async def test_add_participants(self, coordinator, store):
        ids = await coordinator.add_participants("s2", [("u1", "Una"), ("u2", None)])
        assert ids == ["u1", "u2"]
        # Re-registering is harmless
        assert await coordinator.add_participants("s2", [("u1", "Una")]) == ["u1", "u2"]
        with pytest.raises(InvalidReconcilerInput):
            await coordinator.add_participants("s2", [("u3", "Third")])


# ---------------------------------------------------------------------------
# Status and notifications
# ---------------------------------------------------------------------------


class TestStatus:
    async def test_status_is_pure(self, coordinator, store, completion, seed):
        seed(alice_status="held", bob_status="drafting")

        first = await coordinator.get_status(SESSION, ALICE)
        second = await coordinator.get_status(SESSION, ALICE)

        assert first == second
        assert first.my_direction.status == "held"
        assert first.partner_direction.status == "drafting"
        assert completion.calls == []
        assert store.results == []

    async def test_ready_for_next_stage(self, coordinator, completion, seed, publisher):
        seed(alice_status="held", bob_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        status = await coordinator.get_status(SESSION, BOB)
        assert status.ready_for_next_stage
        assert status.partner_id == ALICE
        assert len(publisher.named(REVEALED)) == 1

    async def test_revealed_once_when_store_yields(self, coordinator, store, completion, seed, publisher, monkeypatch):
        seed(alice_status="held", bob_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        _yield_on_transaction(store, monkeypatch)

        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "ready"
        assert store.attempt(BOB).status == "ready"
        assert len(publisher.named(REVEALED)) == 1

    async def test_revealed_memory_is_bounded(self, coordinator, monkeypatch):
        monkeypatch.setattr(coordinator_module, "REVEALED_MEMORY", 2)
        for session_id in ("s1", "s2", "s3"):
            assert coordinator._claim_reveal(session_id)

        assert not coordinator._claim_reveal("s3")
        assert list(coordinator._revealed) == ["s2", "s3"]

    async def test_pending_offer_shown_to_subject(self, coordinator, completion, seed):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = SIGNIFICANT_GAP_REPLY
        completion.script[SHARE_OFFER_TAG] = OFFER_REPLY
        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()

        bob_view = await coordinator.get_status(SESSION, BOB)
        alice_view = await coordinator.get_status(SESSION, ALICE)

        assert bob_view.pending_share_offer is not None
        assert bob_view.pending_share_offer.guesser_id == ALICE
        assert alice_view.pending_share_offer is None
        assert not bob_view.ready_for_next_stage

    async def test_refinement_hint_only_for_guesser(self, coordinator, completion, seed):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = SIGNIFICANT_GAP_REPLY
        completion.script[SHARE_OFFER_TAG] = OFFER_REPLY
        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()
        await coordinator.respond_to_share_offer(SESSION, BOB, "accept")

        alice_view = await coordinator.get_status(SESSION, ALICE)
        bob_view = await coordinator.get_status(SESSION, BOB)

        assert alice_view.my_direction.refinement_hint is not None
        assert bob_view.partner_direction.status == "refining"
        assert bob_view.partner_direction.refinement_hint is None

    async def test_unchanged_status_not_published(self, coordinator, completion, seed, publisher):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        await coordinator.run_direction(ALICE_GUESSES_BOB)
        count = len(publisher.named(STATUS_UPDATED))
        await coordinator.run_direction(ALICE_GUESSES_BOB)

        assert count == 1
        assert len(publisher.named(STATUS_UPDATED)) == 1

    async def test_publisher_failure_does_not_break_run(self, store, completion, settings, seed):
        class BrokenPublisher(RecordingPublisher):
            async def publish(self, session_id, event_name, payload):
                raise RuntimeError("bus gone")

        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        coordinator = ReconciliationCoordinator(store, settings, completion=completion, publisher=BrokenPublisher())

        outcome = await coordinator.run_direction(ALICE_GUESSES_BOB)
        assert outcome.status == "ready"

    async def test_status_for_stranger(self, coordinator, seed):
        seed()
        with pytest.raises(NotFoundError):
            await coordinator.get_status(SESSION, "mallory")


# ---------------------------------------------------------------------------
# Persistence failures
# ---------------------------------------------------------------------------


class TestRetry:
    async def test_transient_error_retried(self, coordinator, store, completion, seed):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        store.fail_next = [_db_down()]

        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "ready"
        assert coordinator.failed_directions == set()

    async def test_exhausted_retries_recorded_then_recovered(self, coordinator, store, completion, seed, settings):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        store.fail_next = [_db_down() for _ in range(1 + settings.trigger_retry_attempts)]

        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "held"
        assert ALICE_GUESSES_BOB in coordinator.failed_directions

        assert await coordinator.recover_stalled() == 1
        await coordinator.wait_idle()
        assert store.attempt(ALICE).status == "ready"
        assert coordinator.failed_directions == set()

    async def test_recover_stalled_resumes_analyzing(self, coordinator, store, completion, seed):
        seed(alice_status="analyzing", bob_status="ready")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY

        assert await coordinator.recover_stalled() == 1
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "ready"

    async def test_retry_still_announces_committed_change(self, coordinator, store, completion, seed, publisher, monkeypatch):
        seed(alice_status="held")
        completion.script[GAP_ANALYSIS_TAG] = SIGNIFICANT_GAP_REPLY
        completion.script[SHARE_OFFER_TAG] = OFFER_REPLY

        load_current_result = coordinator.reconciler.load_current_result
        reads: list[Direction] = []

        async def flaky_load(direction):
            reads.append(direction)
            if len(reads) == 1:
                raise _db_down()
            return await load_current_result(direction)

        monkeypatch.setattr(coordinator.reconciler, "load_current_result", flaky_load)

        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()

        assert store.attempt(ALICE).status == "awaiting_sharing"
        assert coordinator.failed_directions == set()
        updates = publisher.named(STATUS_UPDATED)
        assert [(u["previous"], u["status"]) for u in updates] == [("held", "awaiting_sharing")]
        suggestion = publisher.named(SHARE_SUGGESTION)
        assert len(suggestion) == 1
        assert suggestion[0]["for_user_id"] == BOB
        assert suggestion[0]["preparing"] is True

        # The offer that never got attached is produced on the subject's read
        offer = await coordinator.get_share_offer(SESSION, BOB)
        assert isinstance(offer, ShareOfferView)

    def test_requires_completion_or_components(self, store, settings):
        with pytest.raises(ValueError):
            ReconciliationCoordinator(store, settings)


# ---------------------------------------------------------------------------
# Closing summary
# ---------------------------------------------------------------------------


class TestSummary:
    async def test_summary_after_both_ready(self, coordinator, completion, seed):
        seed(alice_status="held", bob_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        completion.script[SUMMARY_TAG] = SUMMARY_REPLY
        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        summary = await coordinator.generate_summary(SESSION, ALICE)

        assert summary.summary == SUMMARY_REPLY["summary"]
        assert summary.ready_for_next_stage
        _, payload = next(call for call in completion.calls if call[0] == SUMMARY_TAG)
        assert "Alice's understanding of Bob" in payload["prompt"]
        assert "Bob's understanding of Alice" in payload["prompt"]
        assert "Additional sharing occurred: no" in payload["prompt"]

    async def test_summary_notes_shared_context(self, coordinator, completion, seed):
        seed(alice_status="held", bob_status="held")
        completion.script[GAP_ANALYSIS_TAG] = SIGNIFICANT_GAP_REPLY
        completion.script[SHARE_OFFER_TAG] = OFFER_REPLY
        completion.script[SUMMARY_TAG] = SUMMARY_REPLY
        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()
        await coordinator.respond_to_share_offer(SESSION, BOB, "accept")

        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        await coordinator.on_resubmit(SESSION, ALICE, "Bob is worn out, not angry.")
        await coordinator.trigger_one_direction(SESSION, BOB, ALICE)
        await coordinator.wait_idle()

        assert await coordinator.generate_summary(SESSION) is not None
        _, payload = next(call for call in completion.calls if call[0] == SUMMARY_TAG)
        assert "Additional sharing occurred: yes" in payload["prompt"]

    async def test_summary_before_completion_rejected(self, coordinator, completion, seed):
        seed(alice_status="held", bob_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        await coordinator.trigger_one_direction(SESSION, ALICE, BOB)
        await coordinator.wait_idle()

        with pytest.raises(InvalidTransition):
            await coordinator.generate_summary(SESSION, ALICE)
        assert completion.count(SUMMARY_TAG) == 0

    async def test_summary_failure_is_none(self, coordinator, completion, seed):
        seed(alice_status="held", bob_status="held")
        completion.script[GAP_ANALYSIS_TAG] = ALIGNED_REPLY
        completion.script[SUMMARY_TAG] = CompletionError("overloaded")
        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        assert await coordinator.generate_summary(SESSION, BOB) is None

    async def test_summary_for_stranger(self, coordinator, seed):
        seed(alice_status="ready", bob_status="ready")
        with pytest.raises(NotFoundError):
            await coordinator.generate_summary(SESSION, "mallory")


# ---------------------------------------------------------------------------
# Direction locks
# ---------------------------------------------------------------------------


class TestLocks:
    async def test_idle_locks_are_dropped(self, store, settings, seed, publisher):
        seed(alice_status="held", bob_status="held")
        slow = ScriptedCompletion({GAP_ANALYSIS_TAG: ALIGNED_REPLY}, delay=0.05)
        coordinator = ReconciliationCoordinator(store, settings, completion=slow, publisher=publisher)

        running = asyncio.create_task(coordinator.run_direction(ALICE_GUESSES_BOB))
        await asyncio.sleep(0.01)
        assert ALICE_GUESSES_BOB in coordinator._locks

        await asyncio.gather(running, coordinator.run_direction(ALICE_GUESSES_BOB))
        await coordinator.trigger_both_directions(SESSION)
        await coordinator.wait_idle()

        assert coordinator._locks == {}
        assert coordinator._lock_users == {}
