from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Literal

from .models import ConversationTurn
from .protocol import HISTORY_STATE_KEY


def merge_delta(
    accumulated: Mapping[str, Any],
    incoming: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge a runtime state delta into accumulated state.

    Nested mappings on both sides merge key by key; any other incoming value
    (scalars, lists, a mapping replacing a scalar) replaces the existing one.
    Neither argument is mutated.
    """
    merged: dict[str, Any] = dict(accumulated)
    for key, value in incoming.items():
        existing = merged.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_delta(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConversationState:
    """Per-conversation turn list and accumulated runtime state.

    The runtime does not replay raw history, so every outgoing request
    carries the accumulated state plus the rendered turn list. One instance
    belongs to one conversation worker and is not safe for concurrent use.
    """

    def __init__(self, initial_state: Mapping[str, Any] | None = None) -> None:
        self._state: dict[str, Any] = merge_delta({}, initial_state or {})
        self._turns: list[ConversationTurn] = []

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    @property
    def state(self) -> dict[str, Any]:
        """Deep copy of the accumulated state."""
        return copy.deepcopy(self._state)

    def append_turn(self, role: Literal["user", "assistant"], text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self._turns.append(turn)
        return turn

    def merge(self, delta: Mapping[str, Any]) -> None:
        if delta:
            self._state = merge_delta(self._state, delta)

    def history(self) -> list[dict[str, Any]]:
        """Render turns in the runtime's content shape."""
        return [{"role": turn.role, "parts": [{"text": turn.text}]} for turn in self._turns]

    def outgoing_state_delta(self) -> dict[str, Any]:
        """State payload for the next request: accumulated state plus history."""
        outgoing = copy.deepcopy(self._state)
        outgoing[HISTORY_STATE_KEY] = self.history()
        return outgoing

    def reset(self) -> None:
        self._state = {}
        self._turns.clear()
