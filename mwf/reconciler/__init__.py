"""Reconciler module: empathy reconciliation between two session partners.

Public API: ReconciliationCoordinator + the schema types from schemas.py.
"""

from mwf.reconciler.coordinator import ReconciliationCoordinator
from mwf.reconciler.direction import DirectionReconciler, RunOutcome
from mwf.reconciler.errors import (
    InvalidReconcilerInput,
    InvalidTransition,
    NotFoundError,
    ReconcilerError,
)
from mwf.reconciler.gap_analyzer import GapAnalyzer
from mwf.reconciler.schemas import (
    ConversationContext,
    Direction,
    DirectionStatus,
    DirectionView,
    EmpathyStatus,
    GapAnalysis,
    GapSeverity,
    OfferPending,
    RecommendedAction,
    ReconcilerSummary,
    RefinementHint,
    ShareOfferView,
    ShareResponse,
    ShareSuggestion,
    SubjectContext,
    SummaryContext,
)
from mwf.reconciler.share_suggestion import ShareSuggestionGenerator
from mwf.reconciler.store import SqlReconcilerStore
from mwf.reconciler.summary import SummaryGenerator

__all__ = [
    "ReconciliationCoordinator",
    "DirectionReconciler",
    "GapAnalyzer",
    "ShareSuggestionGenerator",
    "SummaryGenerator",
    "SqlReconcilerStore",
    "RunOutcome",
    # Errors
    "ReconcilerError",
    "InvalidReconcilerInput",
    "InvalidTransition",
    "NotFoundError",
    # Type aliases
    "DirectionStatus",
    "GapSeverity",
    "RecommendedAction",
    # Analysis
    "ConversationContext",
    "GapAnalysis",
    "RefinementHint",
    # Offers
    "ShareOfferView",
    "ShareResponse",
    "ShareSuggestion",
    "SubjectContext",
    "OfferPending",
    # Status
    "Direction",
    "DirectionView",
    "EmpathyStatus",
    # Summary
    "ReconcilerSummary",
    "SummaryContext",
]
