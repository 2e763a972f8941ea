"""Gap Analyzer: compares one direction's empathy guess with the subject's self-report.

Calls the completion service with the "extract-gap-analysis" tag and
turns the reply into a GapAnalysis. Never raises on service trouble:
any completion failure yields the fail-open fallback (no gap, proceed).
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from mwf.completion import GAP_ANALYSIS_TAG, CompletionError, CompletionService, guarded_complete
from mwf.config import Settings
from mwf.reconciler.errors import InvalidReconcilerInput
from mwf.reconciler.schemas import (
    SEVERITY_TO_ACTION,
    ConversationContext,
    GapAnalysis,
    GapAnalysisReply,
)
from mwf.utils import excerpt

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """You are the empathy reconciler in a relationship mediation app.
Two partners each described their own feelings, then each wrote a guess of what
the OTHER partner feels. You compare one guess against what the other partner
actually said. Be generous: paraphrases and close synonyms count as understood.
Never judge who is right about the conflict itself."""

_ANALYSIS_PROMPT = """{guesser} wrote this guess of what {subject} is feeling:
<guess>
{guess}
</guess>

What {subject} actually said about their own feelings:
<self_report>
{self_report}
</self_report>
{feelings_block}{shared_block}
Assess how well the guess captures {subject}'s experience.

Return ONLY a valid JSON object:
{{
  "alignment_score": <0-100>,
  "alignment_summary": "<one sentence>",
  "gap_severity": "<none|minor|significant>",
  "gap_summary": "<what was missed, one or two sentences>",
  "missed_feelings": ["<feeling>", ...],
  "misattributions": ["<incorrect assumption>", ...],
  "most_important_gap": "<single most important missed thing, or null>",
  "recommended_action": "<proceed|offer_optional_share|offer_sharing>",
  "rationale": "<why>",
  "suggested_share_focus": "<what {subject} could share to close the gap, or null>",
  "refinement_hint": {{
    "area_hint": "<abstract area, e.g. 'work and effort', or null>",
    "guidance_type": "<e.g. explore_deeper_feelings, or null>",
    "prompt_seed": "<gentle question seed, or null>"
  }}
}}

The refinement_hint is shown to {guesser}; it must not quote or reveal anything
{subject} said."""


class GapAnalyzer:
    """Produces a gap severity and recommended action for one direction."""

    def __init__(self, completion: CompletionService, settings: Settings) -> None:
        self._completion = completion
        self._settings = settings

    async def analyze(
        self,
        guessed_statement: str,
        subject_self_report: str,
        conversation_context: ConversationContext | None = None,
    ) -> GapAnalysis:
        if not guessed_statement or not guessed_statement.strip():
            raise InvalidReconcilerInput("guessed_statement is required")
        if not subject_self_report or not subject_self_report.strip():
            raise InvalidReconcilerInput("subject_self_report is required")

        context = conversation_context or ConversationContext()
        payload = self._build_payload(guessed_statement, subject_self_report, context)

        try:
            reply = await guarded_complete(
                self._completion,
                payload,
                GAP_ANALYSIS_TAG,
                timeout=self._settings.completion_timeout,
            )
            parsed = GapAnalysisReply.model_validate(reply)
        except (CompletionError, ValidationError) as e:
            logger.warning("Gap analysis degraded, failing open: %s", e)
            return fallback_analysis(str(e))

        action = parsed.recommended_action or SEVERITY_TO_ACTION[parsed.gap_severity]
        analysis = GapAnalysis(
            gap_severity=parsed.gap_severity,
            recommended_action=action,
            raw_analysis=parsed.model_dump(mode="json"),
            alignment_score=parsed.alignment_score,
            gap_summary=parsed.gap_summary or None,
            most_important_gap=parsed.most_important_gap,
            suggested_share_focus=parsed.suggested_share_focus,
            refinement_hint=parsed.refinement_hint,
        )
        logger.info(
            "Gap analysis: severity=%s action=%s alignment=%s",
            analysis.gap_severity,
            analysis.recommended_action,
            analysis.alignment_score,
        )
        return analysis

    def _build_payload(
        self, guess: str, self_report: str, context: ConversationContext
    ) -> dict[str, Any]:
        guesser = context.guesser_name or "Your partner"
        subject = context.subject_name or "the other partner"

        feelings_block = ""
        if context.subject_feelings:
            feelings_block = f"\nFeelings {subject} named: {', '.join(context.subject_feelings)}\n"
        shared_block = ""
        if context.shared_context:
            shared_block = (
                f"\n{subject} already shared this extra context with {guesser}:\n"
                f"<shared_context>\n{context.shared_context}\n</shared_context>\n"
                f"This is revision {context.revision} of the guess.\n"
            )

        prompt = _ANALYSIS_PROMPT.format(
            guesser=guesser,
            subject=subject,
            guess=guess.strip(),
            self_report=excerpt(self_report.strip()),
            feelings_block=feelings_block,
            shared_block=shared_block,
        )
        return {
            "system": _SYSTEM_PROMPT,
            "prompt": prompt,
            "max_tokens": self._settings.analysis_max_tokens,
        }


def fallback_analysis(reason: str) -> GapAnalysis:
    """Fail-open result used whenever the completion service is unavailable."""
    return GapAnalysis(
        gap_severity="none",
        recommended_action="proceed",
        raw_analysis={"degraded": True, "reason": reason[:500]},
        gap_summary=None,
        degraded=True,
    )
