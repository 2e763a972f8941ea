"""Reconciler summary: a short closing note once both directions are done."""

from __future__ import annotations

import logging

from mwf.completion import SUMMARY_TAG, CompletionError, CompletionService, guarded_complete
from mwf.config import Settings
from mwf.reconciler.schemas import DirectionDigest, ReconcilerSummary, SummaryContext

logger = logging.getLogger(__name__)

_SUMMARY_PROMPT = """You are summarizing the empathy exchange between {first_name} and {second_name}.

{first_block}

{second_block}

Additional sharing occurred: {shared}

Write a brief, warm summary (3-4 sentences) that acknowledges the empathy
work both have done and highlights what went well without quoting scores.
If there were gaps, note that understanding deepened through sharing. Close
by turning toward the next stage, mapping what each of them needs. Keep it
encouraging without being effusive; focus on progress, not perfection.

Return ONLY a valid JSON object:
{{"summary": "<3-4 sentences>", "ready_for_next_stage": true}}"""


def _digest_block(digest: DirectionDigest) -> str:
    score = "unknown" if digest.alignment_score is None else f"{digest.alignment_score:.0f}%"
    lines = [
        f"{digest.guesser_name}'s understanding of {digest.subject_name}:",
        f"- Alignment: {score}",
    ]
    if digest.alignment_summary:
        lines.append(f"- {digest.alignment_summary}")
    lines.append(f"- Gap severity: {digest.gap_severity}")
    return "\n".join(lines)


class SummaryGenerator:
    """Generates the closing summary. Returns None instead of raising."""

    def __init__(self, completion: CompletionService, settings: Settings) -> None:
        self._completion = completion
        self._settings = settings

    async def generate(self, context: SummaryContext) -> ReconcilerSummary | None:
        payload = {
            "prompt": _SUMMARY_PROMPT.format(
                first_name=context.first.guesser_name,
                second_name=context.second.guesser_name,
                first_block=_digest_block(context.first),
                second_block=_digest_block(context.second),
                shared="yes" if context.additional_sharing_occurred else "no",
            ),
            "max_tokens": self._settings.summary_max_tokens,
        }

        try:
            reply = await guarded_complete(
                self._completion,
                payload,
                SUMMARY_TAG,
                timeout=self._settings.completion_timeout,
            )
        except CompletionError as e:
            logger.warning("Reconciler summary generation failed: %s", e)
            return None

        text = reply.get("summary")
        if not isinstance(text, str) or not text.strip():
            logger.warning("Reconciler summary reply had no usable text")
            return None
        ready = reply.get("ready_for_next_stage", True)
        return ReconcilerSummary(summary=text.strip(), ready_for_next_stage=ready is not False)
