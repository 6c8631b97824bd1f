"""Confirmation decisions and the persisted per-tool confirmation policy."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Dict, Mapping, Protocol, Union

from .tool_registry import ToolArguments

LOGGER = logging.getLogger(__name__)

_POLICY_DIR = Path.home() / ".termpilot"
_DEFAULT_POLICY_PATH = _POLICY_DIR / "confirmation_policy.json"


@dataclass(slots=True, frozen=True)
class ConfirmationDecision:
    """User response to a confirmation prompt.

    ``persist_as_policy`` ("don't ask again") turns the answer into the
    stored policy for that tool: approval disables future prompts, denial
    keeps them on.
    """

    approved: bool
    persist_as_policy: bool = False

    @classmethod
    def approve(cls, *, persist: bool = False) -> "ConfirmationDecision":
        return cls(approved=True, persist_as_policy=persist)

    @classmethod
    def deny(cls, *, persist: bool = False) -> "ConfirmationDecision":
        return cls(approved=False, persist_as_policy=persist)


@dataclass(slots=True, frozen=True)
class ConfirmationRequest:
    """Everything a confirmation prompt needs to ask about one pending call."""

    call_id: str
    tool_name: str
    arguments: ToolArguments
    preview: str
    description: str = ""


class Confirmer(Protocol):
    """Collaborator that asks the user about a pending call (sync or async)."""

    def __call__(
        self, request: ConfirmationRequest
    ) -> Union[ConfirmationDecision, Awaitable[ConfirmationDecision]]:
        ...


class ConfirmationPolicyStore:
    """Persistence adapter for ``{tool_name: requires_confirmation}`` overrides.

    The file is read once at construction and rewritten atomically on every
    change. ``path=None`` keeps the policy in memory only.
    """

    def __init__(self, path: Path | None = _DEFAULT_POLICY_PATH) -> None:
        self._path = path
        self._policies: Dict[str, bool] = self._read_payload()

    @classmethod
    def in_memory(cls, policies: Mapping[str, bool] | None = None) -> "ConfirmationPolicyStore":
        store = cls(path=None)
        store._policies.update({str(name): bool(value) for name, value in (policies or {}).items()})
        return store

    @property
    def path(self) -> Path | None:
        return self._path

    def requires_confirmation(self, tool_name: str) -> bool | None:
        """Return the stored override for ``tool_name`` or ``None`` if unset."""

        return self._policies.get(tool_name)

    def set_policy(self, tool_name: str, requires_confirmation: bool) -> None:
        self._policies[tool_name] = bool(requires_confirmation)
        LOGGER.debug("Confirmation policy for %s set to %s", tool_name, requires_confirmation)
        self.save()

    def clear(self, tool_name: str) -> bool:
        removed = self._policies.pop(tool_name, None) is not None
        if removed:
            self.save()
        return removed

    def policies(self) -> dict[str, bool]:
        return dict(self._policies)

    def save(self) -> Path | None:
        """Persist policies to disk with atomic file writes."""

        if self._path is None:
            return None
        body = json.dumps(self._policies, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        return self._path

    def _read_payload(self) -> Dict[str, bool]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            payload: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Confirmation policy file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, Mapping):
            LOGGER.warning("Confirmation policy file %s does not contain an object", self._path)
            return {}
        policies: Dict[str, bool] = {}
        for name, value in payload.items():
            if isinstance(value, bool):
                policies[str(name)] = value
            else:
                LOGGER.warning("Ignoring non-boolean confirmation policy for %s: %r", name, value)
        return policies


__all__ = [
    "ConfirmationDecision",
    "ConfirmationPolicyStore",
    "ConfirmationRequest",
    "Confirmer",
]
