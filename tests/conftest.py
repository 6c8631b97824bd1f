"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from termpilot.ai.ai_types import AgentRetryPolicy
from termpilot.ai.tools.confirmation import ConfirmationPolicyStore
from termpilot.ai.tools.tool_registry import CapabilityRegistry


@pytest.fixture
def fast_retry() -> AgentRetryPolicy:
    return AgentRetryPolicy(max_attempts=3, backoff_min_seconds=0.0, backoff_max_seconds=0.0)


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture
def policy_store() -> ConfirmationPolicyStore:
    return ConfirmationPolicyStore.in_memory()


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("TERMPILOT_LOG_DIR", str(tmp_path / "logs"))
    for name in (
        "TERMPILOT_API_KEY",
        "TERMPILOT_MODEL",
        "TERMPILOT_BASE_URL",
        "TERMPILOT_DEBUG_LOGGING",
        "TERMPILOT_ROLE",
    ):
        monkeypatch.delenv(name, raising=False)
