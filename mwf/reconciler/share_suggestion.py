"""Share-Suggestion Generator: drafts the context a subject could share.

Only called for analyses whose recommended action is not "proceed".
Returns None on any completion failure so the caller can leave the
offer in its "still preparing" state and retry on the next read.
"""

from __future__ import annotations

import logging

from mwf.completion import SHARE_OFFER_TAG, CompletionError, CompletionService, guarded_complete
from mwf.config import Settings
from mwf.reconciler.schemas import GapAnalysis, ShareSuggestion, SubjectContext
from mwf.utils import excerpt

logger = logging.getLogger(__name__)

_OFFER_PROMPT = """{guesser} tried to put into words how {subject} feels, and missed something:
{gap}

What {subject} said earlier about their own feelings:
<self_report>
{self_report}
</self_report>
{focus_block}
Draft a short message (2-4 sentences) that {subject} could choose to send to
{guesser} to help them understand. Write it in {subject}'s own voice, first
person, warm and non-blaming, drawing only on what {subject} already said.
{subject} will review it and may edit, send or skip it, so it must read as an
offer, not an instruction.

Return ONLY a valid JSON object:
{{"suggested_content": "<the draft message>"}}"""


class ShareSuggestionGenerator:
    """Generates the subject-facing share suggestion for one analysis."""

    def __init__(self, completion: CompletionService, settings: Settings) -> None:
        self._completion = completion
        self._settings = settings

    async def generate(
        self, analysis: GapAnalysis, subject_context: SubjectContext
    ) -> ShareSuggestion | None:
        if not analysis.needs_sharing:
            return None

        subject = subject_context.subject_name or "your partner"
        guesser = subject_context.guesser_name or "the other person"
        gap = analysis.most_important_gap or analysis.gap_summary or "part of what they feel"
        focus_block = ""
        if analysis.suggested_share_focus:
            focus_block = f"\nWhat would help most: {analysis.suggested_share_focus}\n"

        payload = {
            "prompt": _OFFER_PROMPT.format(
                subject=subject,
                guesser=guesser,
                gap=gap,
                self_report=excerpt(subject_context.self_report.strip(), 3000),
                focus_block=focus_block,
            ),
            "max_tokens": self._settings.offer_max_tokens,
        }

        try:
            reply = await guarded_complete(
                self._completion,
                payload,
                SHARE_OFFER_TAG,
                timeout=self._settings.completion_timeout,
            )
        except CompletionError as e:
            logger.warning("Share suggestion generation failed: %s", e)
            return None

        content = reply.get("suggested_content")
        if not isinstance(content, str) or not content.strip():
            logger.warning("Share suggestion reply had no usable content")
            return None
        return ShareSuggestion(suggested_content=content.strip())
