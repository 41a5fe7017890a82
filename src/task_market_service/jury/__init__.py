"""Jury package exports."""

from task_market_service.jury.base import Juror, JurorVote, JuryContext, MockJuror
from task_market_service.jury.llm_juror import LLMJuror

__all__ = ["Juror", "JurorVote", "JuryContext", "LLMJuror", "MockJuror"]
