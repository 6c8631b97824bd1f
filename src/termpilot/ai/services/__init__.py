"""AI service helpers (budget policy, summarization)."""

from .context_policy import BudgetDecision, ContextBudget
from .summarizer import HeuristicSummarizer

__all__ = ["BudgetDecision", "ContextBudget", "HeuristicSummarizer"]
