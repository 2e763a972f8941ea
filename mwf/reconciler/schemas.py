"""Pydantic DTOs for all reconciler inputs and outputs.

These models define the public contract for the reconciler module.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

# Type aliases using Literal for validation
GapSeverity = Literal["none", "minor", "significant"]
RecommendedAction = Literal["proceed", "offer_optional_share", "offer_sharing"]
DirectionStatus = Literal["drafting", "held", "analyzing", "ready", "awaiting_sharing", "refining"]
SubjectDecision = Literal["pending", "accepted", "declined"]
ShareResponseAction = Literal["accept", "decline", "refine"]

SEVERITY_TO_ACTION: dict[str, str] = {
    "none": "proceed",
    "minor": "offer_optional_share",
    "significant": "offer_sharing",
}

# Older prompt versions answered with these names
_LEGACY_ACTIONS = {
    "PROCEED": "proceed",
    "OFFER_OPTIONAL": "offer_optional_share",
    "OFFER_SHARING": "offer_sharing",
}


@dataclass(frozen=True)
class Direction:
    """One ordered (guesser, subject) pair within a session."""

    session_id: str
    guesser_id: str
    subject_id: str

    def reversed(self) -> Direction:
        return Direction(self.session_id, self.subject_id, self.guesser_id)

    def __str__(self) -> str:
        return f"{self.session_id}:{self.guesser_id}->{self.subject_id}"


# --- Gap analysis ---


class RefinementHint(BaseModel):
    """Abstract guidance for the guesser. Never quotes the subject."""

    area_hint: str | None = None
    guidance_type: str | None = None
    prompt_seed: str | None = None


class GapAnalysisReply(BaseModel):
    """Validated shape of the completion reply for extract-gap-analysis."""

    alignment_score: float | None = Field(default=None, ge=0, le=100)
    alignment_summary: str = ""
    gap_severity: GapSeverity
    gap_summary: str = ""
    missed_feelings: list[str] = []
    misattributions: list[str] = []
    most_important_gap: str | None = None
    recommended_action: RecommendedAction | None = None
    rationale: str = ""
    suggested_share_focus: str | None = None
    refinement_hint: RefinementHint | None = None

    @field_validator("gap_severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value == "moderate":
                return "significant"
        return value

    @field_validator("recommended_action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return _LEGACY_ACTIONS.get(value, value.lower())
        return value


class GapAnalysis(BaseModel):
    """Outcome of one gap analysis, before it is persisted."""

    gap_severity: GapSeverity
    recommended_action: RecommendedAction
    raw_analysis: dict[str, Any] = {}
    alignment_score: float | None = None
    gap_summary: str | None = None
    most_important_gap: str | None = None
    suggested_share_focus: str | None = None
    refinement_hint: RefinementHint | None = None
    degraded: bool = False

    @property
    def needs_sharing(self) -> bool:
        return self.recommended_action != "proceed"


class ConversationContext(BaseModel):
    """Optional context handed to the gap analyzer."""

    guesser_name: str | None = None
    subject_name: str | None = None
    subject_feelings: list[str] = []
    shared_context: str | None = None  # what the subject already shared, if anything
    revision: int = 1


# --- Share suggestions ---


class SubjectContext(BaseModel):
    subject_name: str | None = None
    guesser_name: str | None = None
    self_report: str = ""


class ShareSuggestion(BaseModel):
    suggested_content: str


class ShareOfferView(BaseModel):
    """A share offer as shown to its subject."""

    offer_id: UUID
    guesser_id: str
    subject_id: str
    suggested_content: str | None
    subject_decision: SubjectDecision
    gap_summary: str | None = None
    created_at: datetime


class OfferPending(BaseModel):
    """The offer is not available yet; the next query may succeed."""

    reason: str
    retry_after: float = 2.0


class ShareResponse(BaseModel):
    status: SubjectDecision
    shared_content: str | None
    guesser_status: DirectionStatus


# --- Status ---


class DirectionView(BaseModel):
    """Derived status of one direction. Never persisted."""

    guesser_id: str
    subject_id: str
    status: DirectionStatus
    has_attempt: bool = False
    revision: int | None = None
    gap_severity: GapSeverity | None = None
    recommended_action: RecommendedAction | None = None
    analyzed_at: datetime | None = None
    degraded: bool = False
    # awaiting_sharing without offer content yet
    offer_preparing: bool = False
    refinement_hint: RefinementHint | None = None
    has_shared_context: bool = False
    shared_context: str | None = None


class EmpathyStatus(BaseModel):
    """Both directions involving one user, from that user's point of view."""

    session_id: str
    user_id: str
    partner_id: str
    my_direction: DirectionView
    partner_direction: DirectionView
    pending_share_offer: ShareOfferView | None = None
    ready_for_next_stage: bool = False


# --- Summary ---


class DirectionDigest(BaseModel):
    """How well one guesser understood the subject, as fed to the summary."""

    guesser_name: str
    subject_name: str
    alignment_score: float | None = None
    alignment_summary: str = ""
    gap_severity: GapSeverity = "none"


class SummaryContext(BaseModel):
    first: DirectionDigest
    second: DirectionDigest
    additional_sharing_occurred: bool = False


class ReconcilerSummary(BaseModel):
    """Closing summary of the empathy exchange, shown to both partners."""

    summary: str
    ready_for_next_stage: bool = True
