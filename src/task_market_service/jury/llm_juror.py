"""LiteLLM-backed juror implementation."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, cast

import litellm

from task_market_service.core.exceptions import ServiceError
from task_market_service.jury.base import Juror, JurorVote, JuryContext
from task_market_service.jury.prompts import (
    EVALUATION_TEMPLATE,
    PERSONAS,
    SYSTEM_PROMPT_TEMPLATE,
)
from task_market_service.services.statuses import Verdict


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _extract_content(response: Any) -> str:
    """Extract content from LiteLLM response object."""
    choices: Any
    if isinstance(response, dict):
        choices = response.get("choices")
    else:
        choices = getattr(response, "choices", None)
    if not isinstance(choices, list) or len(choices) == 0:
        raise ValueError("Missing choices in LLM response")

    first = choices[0]
    message: Any = (
        first.get("message") if isinstance(first, dict) else getattr(first, "message", None)
    )
    if message is None:
        raise ValueError("Missing message in LLM response")

    content: Any
    if isinstance(message, dict):
        content = message.get("content")
    else:
        content = getattr(message, "content", None)
    if not isinstance(content, str) or content.strip() == "":
        raise ValueError("Missing content in LLM response")

    return content


def parse_vote(parsed: dict[str, Any]) -> tuple[str, str, float]:
    """Validate the juror JSON contract and return (vote, reasoning, confidence)."""
    vote = parsed.get("vote")
    if vote not in (Verdict.WORKER_PAID, Verdict.REJECTION_UPHELD):
        raise ValueError(f"Invalid vote: {vote!r}")

    reasoning = parsed.get("reasoning")
    if not isinstance(reasoning, str) or reasoning.strip() == "":
        raise ValueError("reasoning must be a non-empty string")

    confidence = parsed.get("confidence", 0.5)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValueError("confidence must be a number")
    return str(vote), reasoning, min(1.0, max(0.0, float(confidence)))


class LLMJuror(Juror):
    """Juror backed by LiteLLM with a persona-specific system prompt."""

    def __init__(self, juror_id: str, model: str, persona: str, temperature: float) -> None:
        if persona not in PERSONAS:
            raise ValueError(f"Unknown juror persona: {persona}")
        self._juror_id = juror_id
        self._model = model
        self._system_prompt = SYSTEM_PROMPT_TEMPLATE.format(persona=PERSONAS[persona])
        self._temperature = temperature

    @property
    def juror_id(self) -> str:
        return self._juror_id

    async def vote(self, context: JuryContext) -> JurorVote:
        """Evaluate the blind context and return a vote."""
        prompt = EVALUATION_TEMPLATE.format(
            task_title=context.task_title,
            task_description=context.task_description,
            task_requirements=context.task_requirements,
            submission_content=context.submission_content,
            evidence_count=context.evidence_count,
            dispute_reason=context.dispute_reason,
        )

        try:
            response = await litellm.acompletion(
                model=self._model,
                messages=[
                    {"role": "system", "content": self._system_prompt},
                    {"role": "user", "content": prompt},
                ],
                temperature=self._temperature,
                response_format={"type": "json_object"},
            )
            content = _extract_content(response)
            parsed = cast("dict[str, Any]", json.loads(content))
            if not isinstance(parsed, dict):
                raise ValueError("Juror response must be a JSON object")
            vote, reasoning, confidence = parse_vote(parsed)
        except Exception as exc:
            raise ServiceError(
                "JUROR_UNAVAILABLE",
                f"Juror {self._juror_id} unavailable",
                502,
                {},
            ) from exc

        return JurorVote(
            juror_id=self._juror_id,
            vote=vote,
            reasoning=reasoning,
            confidence=confidence,
            voted_at=_utc_now_iso(),
        )
