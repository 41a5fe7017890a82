"""Unit tests for juror panel construction at startup."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from task_market_service.config import JuryConfig
from task_market_service.core.lifespan import _build_jurors
from task_market_service.jury import LLMJuror, MockJuror


def _settings(*jurors: dict[str, Any]) -> Any:
    return SimpleNamespace(
        jury=JuryConfig(panel_size=3, juror_timeout_seconds=5, jurors=list(jurors))
    )


def _mock(juror_id: str, fixed_vote: str | None = "WORKER_PAID") -> dict[str, Any]:
    return {"id": juror_id, "provider": "mock", "persona": "strict", "fixed_vote": fixed_vote}


@pytest.mark.unit
def test_builds_mock_and_llm_jurors() -> None:
    jurors = _build_jurors(
        _settings(
            _mock("juror-a"),
            _mock("juror-b", fixed_vote=None),
            {
                "id": "juror-c",
                "provider": "openai",
                "model": "gpt-4o-mini",
                "persona": "technical",
                "temperature": 0.2,
            },
        )
    )

    assert [type(juror) for juror in jurors] == [MockJuror, MockJuror, LLMJuror]
    assert [juror.juror_id for juror in jurors] == ["juror-a", "juror-b", "juror-c"]


@pytest.mark.unit
def test_mock_juror_with_unknown_vote_is_rejected() -> None:
    with pytest.raises(ValueError, match="invalid fixed_vote"):
        _build_jurors(_settings(_mock("juror-a", "MAYBE"), _mock("juror-b"), _mock("juror-c")))


@pytest.mark.unit
def test_llm_juror_requires_model_and_temperature() -> None:
    incomplete = {"id": "juror-c", "provider": "openai", "persona": "strict"}

    with pytest.raises(ValueError, match="missing required model or temperature"):
        _build_jurors(_settings(_mock("juror-a"), _mock("juror-b"), incomplete))
