"""Unit tests for jurors and the juror vote contract."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import litellm
import pytest

from task_market_service.core.exceptions import ServiceError
from task_market_service.jury import JuryContext, LLMJuror, MockJuror
from task_market_service.jury.llm_juror import parse_vote

CONTEXT = JuryContext(
    task_title="Label 100 images",
    task_description="Draw bounding boxes around every car.",
    task_requirements="COCO JSON output",
    submission_content="Labels attached",
    evidence_count=2,
    dispute_reason="All boxes are present",
)


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _juror() -> LLMJuror:
    return LLMJuror(juror_id="juror-strict", model="test/model", persona="strict", temperature=0.3)


@pytest.mark.unit
async def test_mock_juror_returns_fixed_vote() -> None:
    juror = MockJuror(juror_id="j1", fixed_vote="WORKER_PAID", reasoning="Looks complete")

    vote = await juror.vote(CONTEXT)

    assert vote.juror_id == "j1"
    assert vote.vote == "WORKER_PAID"
    assert vote.reasoning == "Looks complete"
    assert vote.confidence == 1.0
    assert vote.voted_at.endswith("Z")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("parsed", "expected"),
    [
        (
            {"vote": "WORKER_PAID", "reasoning": "Meets requirements", "confidence": 0.8},
            ("WORKER_PAID", "Meets requirements", 0.8),
        ),
        (
            {"vote": "REJECTION_UPHELD", "reasoning": "Incomplete"},
            ("REJECTION_UPHELD", "Incomplete", 0.5),
        ),
        (
            {"vote": "WORKER_PAID", "reasoning": "Sure", "confidence": 7},
            ("WORKER_PAID", "Sure", 1.0),
        ),
    ],
)
def test_parse_vote_accepts_contract(parsed: dict, expected: tuple) -> None:
    assert parse_vote(parsed) == expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "parsed",
    [
        {"vote": "SPLIT", "reasoning": "Half"},
        {"vote": "WORKER_PAID", "reasoning": "  "},
        {"vote": "WORKER_PAID", "reasoning": "Fine", "confidence": "high"},
        {"vote": "WORKER_PAID", "reasoning": "Fine", "confidence": True},
    ],
)
def test_parse_vote_rejects_malformed(parsed: dict) -> None:
    with pytest.raises(ValueError):
        parse_vote(parsed)


@pytest.mark.unit
def test_unknown_persona_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown juror persona"):
        LLMJuror(juror_id="j", model="test/model", persona="whimsical", temperature=0.3)


@pytest.mark.unit
async def test_llm_juror_sends_blind_prompt(monkeypatch) -> None:
    acompletion = AsyncMock(
        return_value=_completion(
            json.dumps({"vote": "WORKER_PAID", "reasoning": "All cars boxed", "confidence": 0.9})
        )
    )
    monkeypatch.setattr(litellm, "acompletion", acompletion)

    vote = await _juror().vote(CONTEXT)

    assert vote.vote == "WORKER_PAID"
    assert vote.reasoning == "All cars boxed"
    assert vote.confidence == 0.9
    kwargs = acompletion.await_args.kwargs
    assert kwargs["model"] == "test/model"
    assert kwargs["temperature"] == 0.3
    assert kwargs["response_format"] == {"type": "json_object"}
    user_prompt = kwargs["messages"][1]["content"]
    assert "All boxes are present" in user_prompt
    assert "Labels attached" in user_prompt


@pytest.mark.unit
@pytest.mark.parametrize(
    "content",
    ["not json", json.dumps(["WORKER_PAID"]), json.dumps({"vote": "MAYBE", "reasoning": "?"})],
)
async def test_llm_juror_bad_output_is_unavailable(monkeypatch, content: str) -> None:
    monkeypatch.setattr(litellm, "acompletion", AsyncMock(return_value=_completion(content)))

    with pytest.raises(ServiceError) as exc_info:
        await _juror().vote(CONTEXT)

    assert exc_info.value.error == "JUROR_UNAVAILABLE"
    assert exc_info.value.status_code == 502


@pytest.mark.unit
async def test_llm_juror_provider_error_is_unavailable(monkeypatch) -> None:
    monkeypatch.setattr(
        litellm, "acompletion", AsyncMock(side_effect=RuntimeError("rate limited"))
    )

    with pytest.raises(ServiceError) as exc_info:
        await _juror().vote(CONTEXT)

    assert exc_info.value.error == "JUROR_UNAVAILABLE"
