"""Unit tests for verification challenges."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from task_market_service.core.exceptions import ServiceError
from task_market_service.services.challenge_service import (
    GENERATORS,
    ChallengeService,
    answer_matches,
    generate_challenge,
)
from task_market_service.services.token_validator import Actor

AGENT = Actor(agent_id="a-solver")


def _service(on_verified=None, *, ttl_seconds: int = 30) -> ChallengeService:
    return ChallengeService(
        ttl_seconds=ttl_seconds,
        purge_grace_seconds=60,
        on_verified=on_verified or MagicMock(return_value={"account_id": AGENT.agent_id}),
        rng=random.Random(7),
    )


def _expected_answer(service: ChallengeService, challenge_id: str) -> str:
    return service._challenges[challenge_id].answer


@pytest.mark.unit
@pytest.mark.parametrize("generator", GENERATORS, ids=lambda item: item.__name__.strip("_"))
def test_every_generator_produces_solvable_prompt(generator) -> None:
    generated = generator(random.Random(11))

    assert generated.prompt
    assert generated.answer
    assert answer_matches(generated.kind, generated.answer, f"  {generated.answer}\n")


@pytest.mark.unit
def test_generation_is_deterministic_for_a_seed() -> None:
    first = generate_challenge(random.Random(3))
    second = generate_challenge(random.Random(3))
    assert first == second


@pytest.mark.unit
@pytest.mark.parametrize(
    ("kind", "expected", "answer", "matches"),
    [
        ("math", "4242", "4242", True),
        ("math", "4242", "The answer is 4242.", True),
        ("math", "4242", "4243", False),
        ("sort_numbers", "3, 8, 21", "3,8,21", True),
        ("sort_numbers", "3, 8, 21", "21, 8, 3", False),
        ("reverse_string", "cba", "3,8", False),
    ],
)
def test_answer_matching(kind: str, expected: str, answer: str, matches: bool) -> None:
    assert answer_matches(kind, expected, answer) is matches


@pytest.mark.unit
def test_correct_answer_verifies_agent() -> None:
    on_verified = MagicMock(return_value={"account_id": AGENT.agent_id, "verified_at": "now"})
    service = _service(on_verified)
    issued = service.create_challenge(AGENT)

    assert issued["challenge_id"].startswith("ch-")
    assert issued["expires_at"].endswith("Z")

    answer = _expected_answer(service, issued["challenge_id"])
    result = service.verify(issued["challenge_id"], answer, AGENT)

    assert result == {
        "verified": True,
        "account": {"account_id": AGENT.agent_id, "verified_at": "now"},
    }
    on_verified.assert_called_once_with(AGENT.agent_id)


@pytest.mark.unit
def test_challenge_is_single_use() -> None:
    service = _service()
    issued = service.create_challenge(AGENT)

    with pytest.raises(ServiceError) as exc_info:
        service.verify(issued["challenge_id"], "no idea", AGENT)
    assert exc_info.value.error == "CHALLENGE_FAILED"
    assert exc_info.value.status_code == 400

    with pytest.raises(ServiceError) as exc_info:
        service.verify(issued["challenge_id"], "no idea", AGENT)
    assert exc_info.value.error == "CHALLENGE_NOT_FOUND"
    assert exc_info.value.status_code == 404


@pytest.mark.unit
def test_challenge_bound_to_issuing_agent() -> None:
    service = _service()
    issued = service.create_challenge(AGENT)
    answer = _expected_answer(service, issued["challenge_id"])

    with pytest.raises(ServiceError) as exc_info:
        service.verify(issued["challenge_id"], answer, Actor(agent_id="a-imposter"))
    assert exc_info.value.error == "FORBIDDEN"

    assert service.verify(issued["challenge_id"], answer, AGENT)["verified"] is True


@pytest.mark.unit
def test_late_answer_is_expired() -> None:
    on_verified = MagicMock()
    service = _service(on_verified)
    with freeze_time("2026-05-01 09:00:00") as frozen:
        issued = service.create_challenge(AGENT)
        answer = _expected_answer(service, issued["challenge_id"])
        frozen.tick(31)
        with pytest.raises(ServiceError) as exc_info:
            service.verify(issued["challenge_id"], answer, AGENT)

    assert exc_info.value.error == "CHALLENGE_EXPIRED"
    assert exc_info.value.status_code == 410
    on_verified.assert_not_called()


@pytest.mark.unit
def test_non_string_answer_is_invalid() -> None:
    service = _service()
    issued = service.create_challenge(AGENT)

    with pytest.raises(ServiceError) as exc_info:
        service.verify(issued["challenge_id"], 12345, AGENT)
    assert exc_info.value.error == "INVALID_PAYLOAD"
    assert service.active_count == 1


@pytest.mark.unit
def test_expired_challenges_are_purged_after_grace() -> None:
    service = _service()
    with freeze_time("2026-05-01 09:00:00") as frozen:
        service.create_challenge(AGENT)
        frozen.tick(60)
        service.create_challenge(AGENT)
        assert service.active_count == 2
        frozen.tick(60)
        service.create_challenge(AGENT)
        assert service.active_count == 2
