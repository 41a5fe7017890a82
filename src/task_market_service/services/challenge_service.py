"""Short-lived reasoning challenges that an agent solves to become verified."""

from __future__ import annotations

import random
import string
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from task_market_service.services.token_validator import Actor

_WORD_POOL = (
    "alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf", "hotel", "india",
    "juliet", "kilo", "lima", "mike", "november", "oscar", "papa", "quebec", "romeo",
    "sierra", "tango",
)  # fmt: skip


@dataclass(frozen=True)
class GeneratedChallenge:
    kind: str
    prompt: str
    answer: str


@dataclass(frozen=True)
class Challenge:
    """An issued challenge awaiting its single answer."""

    challenge_id: str
    agent_id: str
    kind: str
    prompt: str
    answer: str
    expires_at: datetime


def _reverse_string(rng: random.Random) -> GeneratedChallenge:
    alphabet = string.ascii_letters + string.digits
    text = "".join(rng.choice(alphabet) for _ in range(rng.randint(8, 14)))
    return GeneratedChallenge(
        kind="reverse_string",
        prompt=(
            "Reverse the following string and respond with ONLY the reversed string, "
            f'nothing else: "{text}"'
        ),
        answer=text[::-1],
    )


def _math(rng: random.Random) -> GeneratedChallenge:
    a = rng.randint(100, 9999)
    b = rng.randint(100, 9999)
    return GeneratedChallenge(
        kind="math",
        prompt=f"What is {a} + {b}? Respond with ONLY the number, nothing else.",
        answer=str(a + b),
    )


def _word_count(rng: random.Random) -> GeneratedChallenge:
    count = rng.randint(4, 9)
    sentence = " ".join(rng.choice(_WORD_POOL) for _ in range(count))
    return GeneratedChallenge(
        kind="word_count",
        prompt=(
            "How many words are in this sentence? Respond with ONLY the number, "
            f'nothing else: "{sentence}"'
        ),
        answer=str(count),
    )


def _sort_numbers(rng: random.Random) -> GeneratedChallenge:
    numbers = rng.sample(range(1, 100), rng.randint(4, 6))
    return GeneratedChallenge(
        kind="sort_numbers",
        prompt=(
            "Sort these numbers in ascending order, separated by commas. Respond with ONLY "
            f"the sorted numbers, nothing else: {', '.join(str(n) for n in numbers)}"
        ),
        answer=", ".join(str(n) for n in sorted(numbers)),
    )


def _extract_uppercase(rng: random.Random) -> GeneratedChallenge:
    chars = [
        rng.choice(string.ascii_uppercase)
        if rng.random() > 0.5
        else rng.choice(string.ascii_lowercase)
        for _ in range(rng.randint(10, 16))
    ]
    if sum(1 for char in chars if char.isupper()) < 2:
        chars = [rng.choice(string.ascii_uppercase), *chars, rng.choice(string.ascii_uppercase)]
    mixed = "".join(chars)
    return GeneratedChallenge(
        kind="extract_uppercase",
        prompt=(
            "What are the uppercase letters in this string, in order? Respond with ONLY the "
            f'uppercase letters concatenated together, nothing else: "{mixed}"'
        ),
        answer="".join(char for char in mixed if char.isupper()),
    )


GENERATORS: tuple[Callable[[random.Random], GeneratedChallenge], ...] = (
    _reverse_string,
    _math,
    _word_count,
    _sort_numbers,
    _extract_uppercase,
)


def generate_challenge(rng: random.Random) -> GeneratedChallenge:
    """Pick one of the generators and produce a prompt with its expected answer."""
    return rng.choice(GENERATORS)(rng)


def answer_matches(kind: str, expected: str, answer: str) -> bool:
    """Exact or containing match; sorted numbers also match with whitespace ignored."""
    given = answer.strip()
    wanted = expected.strip()
    if given == wanted or wanted in given:
        return True
    if kind == "sort_numbers":
        compact_given = "".join(given.split())
        compact_wanted = "".join(wanted.split())
        return compact_wanted in compact_given
    return False


class ChallengeService:
    """
    In-memory challenge issuer.

    Each challenge is bound to the agent it was issued to and may be
    answered exactly once. Expired challenges are purged lazily on the next
    issue, a grace period after their expiry.
    """

    def __init__(
        self,
        ttl_seconds: int,
        purge_grace_seconds: int,
        on_verified: Callable[[str], dict[str, Any]],
        rng: random.Random | None = None,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._purge_grace = timedelta(seconds=purge_grace_seconds)
        self._on_verified = on_verified
        self._rng = rng if rng is not None else random.SystemRandom()
        self._challenges: dict[str, Challenge] = {}
        self._lock = Lock()
        self._logger = get_logger(__name__)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._challenges)

    def _purge_expired(self, now: datetime) -> None:
        cutoff = now - self._purge_grace
        expired = [key for key, item in self._challenges.items() if item.expires_at < cutoff]
        for key in expired:
            del self._challenges[key]

    def create_challenge(self, actor: Actor) -> dict[str, Any]:
        """Issue a new challenge to the calling agent."""
        now = datetime.now(UTC)
        generated = generate_challenge(self._rng)
        challenge = Challenge(
            challenge_id=f"ch-{uuid.uuid4()}",
            agent_id=actor.agent_id,
            kind=generated.kind,
            prompt=generated.prompt,
            answer=generated.answer,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._purge_expired(now)
            self._challenges[challenge.challenge_id] = challenge

        return {
            "challenge_id": challenge.challenge_id,
            "type": challenge.kind,
            "prompt": challenge.prompt,
            "expires_at": challenge.expires_at.isoformat().replace("+00:00", "Z"),
        }

    def verify(self, challenge_id: str, answer: object, actor: Actor) -> dict[str, Any]:
        """
        Check the single answer to a challenge.

        Error precedence:
        - INVALID_PAYLOAD (400): answer is not a string
        - CHALLENGE_NOT_FOUND (404): unknown or already used
        - FORBIDDEN (403): issued to another agent
        - CHALLENGE_EXPIRED (410)
        - CHALLENGE_FAILED (400): wrong answer
        """
        if not isinstance(answer, str):
            raise ServiceError("INVALID_PAYLOAD", "answer must be a string", 400)

        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None:
                raise ServiceError(
                    "CHALLENGE_NOT_FOUND",
                    "Challenge not found or already used",
                    404,
                )
            if challenge.agent_id != actor.agent_id:
                raise ServiceError("FORBIDDEN", "Challenge was issued to another agent", 403)
            del self._challenges[challenge_id]

        if datetime.now(UTC) > challenge.expires_at:
            raise ServiceError(
                "CHALLENGE_EXPIRED",
                f"Challenge expired ({int(self._ttl.total_seconds())} second time limit)",
                410,
            )
        if not answer_matches(challenge.kind, challenge.answer, answer):
            self._logger.info(
                "Challenge failed",
                extra={"challenge_id": challenge_id, "agent_id": actor.agent_id},
            )
            raise ServiceError("CHALLENGE_FAILED", "Incorrect answer", 400)

        account = self._on_verified(actor.agent_id)
        self._logger.info(
            "Agent verified",
            extra={"challenge_id": challenge_id, "agent_id": actor.agent_id},
        )
        return {"verified": True, "account": account}
