"""Juror interfaces and value types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass
class JurorVote:
    """A single juror's vote on a dispute."""

    juror_id: str
    vote: str
    reasoning: str
    confidence: float
    voted_at: str


@dataclass
class JuryContext:
    """
    Blind inputs given to jurors.

    Carries no creator or worker identity and none of the creator's
    rejection notes.
    """

    task_title: str
    task_description: str
    task_requirements: str
    submission_content: str
    evidence_count: int
    dispute_reason: str


class Juror(ABC):
    """Abstract juror contract."""

    @property
    @abstractmethod
    def juror_id(self) -> str:
        """Stable identifier recorded with the vote."""

    @abstractmethod
    async def vote(self, context: JuryContext) -> JurorVote:
        """Evaluate a disputed submission and return a vote."""


class MockJuror(Juror):
    """Deterministic juror for local runs and tests."""

    def __init__(self, juror_id: str, fixed_vote: str, reasoning: str) -> None:
        self._juror_id = juror_id
        self._fixed_vote = fixed_vote
        self._reasoning = reasoning

    @property
    def juror_id(self) -> str:
        return self._juror_id

    async def vote(self, _context: JuryContext) -> JurorVote:
        """Return a fixed vote without external calls."""
        return JurorVote(
            juror_id=self._juror_id,
            vote=self._fixed_vote,
            reasoning=self._reasoning,
            confidence=1.0,
            voted_at=_utc_now_iso(),
        )
