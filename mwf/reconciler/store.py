"""Persistence layer for the reconciler.

Every read and write happens through a transaction object obtained from
``ReconcilerStore.transaction()``. The direction reconciler relies on that
to keep the anti-loop guard read and the following status write in one
database transaction. Transactions are never held open across a
completion call.

ReconciliationResult rows are insert-only: a new analysis stamps
``superseded_at`` on the previous current row and inserts a fresh one.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mwf.reconciler.schemas import Direction
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

logger = logging.getLogger(__name__)


class ReconcilerTransaction(Protocol):
    """Operations available inside one transaction."""

    # Participants & self-reports
    async def get_participants(self, session_id: str) -> list[Participant]: ...
    async def add_participant(self, participant: Participant) -> None: ...
    async def get_self_report(self, session_id: str, user_id: str) -> SelfReport | None: ...
    async def add_self_report(self, report: SelfReport) -> None: ...

    # Attempts
    async def get_attempt(
        self, session_id: str, guesser_id: str, *, lock: bool = False
    ) -> EmpathyAttempt | None: ...
    async def add_attempt(self, attempt: EmpathyAttempt) -> None: ...
    async def list_attempts_by_status(self, status: str) -> list[EmpathyAttempt]: ...

    # Results
    async def get_current_result(self, direction: Direction) -> ReconciliationResult | None: ...
    async def count_results(self, direction: Direction) -> int: ...
    async def add_result(self, result: ReconciliationResult) -> None: ...

    # Offers
    async def get_offer_for_result(self, result_id: UUID) -> ShareOffer | None: ...
    async def get_accepted_offer(self, direction: Direction) -> ShareOffer | None: ...
    async def add_offer(self, offer: ShareOffer) -> None: ...

    # Shared context
    async def get_shared_context(
        self, session_id: str, from_user_id: str, to_user_id: str
    ) -> SharedContextRecord | None: ...
    async def add_shared_context(self, record: SharedContextRecord) -> None: ...
    async def add_context_message(self, message: ContextMessage) -> None: ...
    async def delete_context_messages(self, session_id: str) -> int: ...


class ReconcilerStore(Protocol):
    def transaction(self) -> AsyncIterator[ReconcilerTransaction]: ...


class SqlTransaction:
    """ReconcilerTransaction backed by one SQLAlchemy AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Participants & self-reports
    # ------------------------------------------------------------------

    async def get_participants(self, session_id: str) -> list[Participant]:
        result = await self.session.execute(
            select(Participant)
            .where(Participant.session_id == session_id)
            .order_by(Participant.created_at, Participant.user_id)
        )
        return list(result.scalars().all())

    async def add_participant(self, participant: Participant) -> None:
        self.session.add(participant)
        await self.session.flush()

    async def get_self_report(self, session_id: str, user_id: str) -> SelfReport | None:
        result = await self.session.execute(
            select(SelfReport)
            .where(SelfReport.session_id == session_id)
            .where(SelfReport.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def add_self_report(self, report: SelfReport) -> None:
        self.session.add(report)
        await self.session.flush()

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def get_attempt(
        self, session_id: str, guesser_id: str, *, lock: bool = False
    ) -> EmpathyAttempt | None:
        q = (
            select(EmpathyAttempt)
            .where(EmpathyAttempt.session_id == session_id)
            .where(EmpathyAttempt.guesser_id == guesser_id)
        )
        if lock:
            q = q.with_for_update()
        result = await self.session.execute(q)
        return result.scalar_one_or_none()

    async def add_attempt(self, attempt: EmpathyAttempt) -> None:
        self.session.add(attempt)
        await self.session.flush()

    async def list_attempts_by_status(self, status: str) -> list[EmpathyAttempt]:
        result = await self.session.execute(
            select(EmpathyAttempt)
            .where(EmpathyAttempt.status == status)
            .order_by(EmpathyAttempt.updated_at)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def get_current_result(self, direction: Direction) -> ReconciliationResult | None:
        result = await self.session.execute(
            select(ReconciliationResult)
            .where(ReconciliationResult.session_id == direction.session_id)
            .where(ReconciliationResult.guesser_id == direction.guesser_id)
            .where(ReconciliationResult.subject_id == direction.subject_id)
            .where(ReconciliationResult.superseded_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def count_results(self, direction: Direction) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(ReconciliationResult)
            .where(ReconciliationResult.session_id == direction.session_id)
            .where(ReconciliationResult.guesser_id == direction.guesser_id)
            .where(ReconciliationResult.subject_id == direction.subject_id)
        )
        return count or 0

    async def add_result(self, result: ReconciliationResult) -> None:
        """Supersede the direction's current result, then insert the new one."""
        await self.session.execute(
            update(ReconciliationResult)
            .where(ReconciliationResult.session_id == result.session_id)
            .where(ReconciliationResult.guesser_id == result.guesser_id)
            .where(ReconciliationResult.subject_id == result.subject_id)
            .where(ReconciliationResult.superseded_at.is_(None))
            .values(superseded_at=utcnow())
        )
        self.session.add(result)
        await self.session.flush()

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def get_offer_for_result(self, result_id: UUID) -> ShareOffer | None:
        result = await self.session.execute(
            select(ShareOffer).where(ShareOffer.reconciliation_result_id == result_id)
        )
        return result.scalar_one_or_none()

    async def get_accepted_offer(self, direction: Direction) -> ShareOffer | None:
        result = await self.session.execute(
            select(ShareOffer)
            .where(ShareOffer.session_id == direction.session_id)
            .where(ShareOffer.guesser_id == direction.guesser_id)
            .where(ShareOffer.subject_id == direction.subject_id)
            .where(ShareOffer.subject_decision == "accepted")
            .order_by(ShareOffer.decided_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_offer(self, offer: ShareOffer) -> None:
        self.session.add(offer)
        await self.session.flush()

    # ------------------------------------------------------------------
    # Shared context
    # ------------------------------------------------------------------

    async def get_shared_context(
        self, session_id: str, from_user_id: str, to_user_id: str
    ) -> SharedContextRecord | None:
        result = await self.session.execute(
            select(SharedContextRecord)
            .where(SharedContextRecord.session_id == session_id)
            .where(SharedContextRecord.from_user_id == from_user_id)
            .where(SharedContextRecord.to_user_id == to_user_id)
        )
        return result.scalar_one_or_none()

    async def add_shared_context(self, record: SharedContextRecord) -> None:
        self.session.add(record)
        await self.session.flush()

    async def add_context_message(self, message: ContextMessage) -> None:
        self.session.add(message)
        await self.session.flush()

    async def delete_context_messages(self, session_id: str) -> int:
        result = await self.session.execute(
            delete(ContextMessage).where(ContextMessage.session_id == session_id)
        )
        return result.rowcount


class SqlReconcilerStore:
    """ReconcilerStore on top of the async SQLAlchemy Database."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransaction]:
        """Commit on clean exit, roll back on any exception."""
        async with self._db.session() as session:
            async with session.begin():
                yield SqlTransaction(session)
