"""In-memory credential pool: an ordered, growable sequence of slots.

Each slot is either :class:`Active` (holds a credential) or :class:`Empty`.
Positions are stable: slots are appended when the pool grows but never
removed, only emptied.  The pool's persisted form is a JSON list with
``null`` for empty slots, so positions survive restarts::

    ["hf_abc", null, "hf_def"]

The active count is maintained incrementally because the dispatcher and the
provisioning policy read it on every request.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Iterator, Union


@dataclass(frozen=True, slots=True)
class Active:
    """A slot holding a usable credential."""

    token: str

    def __repr__(self) -> str:
        # Tokens must not leak through reprs in logs or test output.
        return f"Active(token='{self.token[:4]}…')"


@dataclass(frozen=True, slots=True)
class Empty:
    """A slot whose credential was deprecated (or never filled)."""


EMPTY = Empty()

Slot = Union[Active, Empty]


class CredentialPool:
    """Ordered credential slots with an incrementally maintained active count.

    Mutations never suspend, so each one is atomic with respect to other
    asyncio tasks.

    Args:
        slots: Initial slots in position order.
    """

    def __init__(self, slots: list[Slot] | None = None) -> None:
        self._slots: list[Slot] = list(slots or [])
        self._active = sum(1 for slot in self._slots if isinstance(slot, Active))

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    @classmethod
    def from_json(cls, raw: str) -> CredentialPool:
        """Build a pool from its persisted JSON list.

        Args:
            raw: JSON array of credential strings and ``null`` markers.

        Returns:
            A new :class:`CredentialPool`.

        Raises:
            ValueError: If ``raw`` is not a JSON list of strings and nulls.
        """
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("Persisted pool must be a JSON list")
        slots: list[Slot] = []
        for item in data:
            if item is None or item == "":
                slots.append(EMPTY)
            elif isinstance(item, str):
                slots.append(Active(item))
            else:
                raise ValueError(f"Unexpected pool entry of type {type(item).__name__}")
        return cls(slots)

    def to_json(self) -> str:
        """Serialise every slot, in order, with ``null`` for empty slots."""
        return json.dumps(
            [slot.token if isinstance(slot, Active) else None for slot in self._slots]
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return self._active

    def __len__(self) -> int:
        return len(self._slots)

    def __getitem__(self, index: int) -> Slot:
        return self._slots[index]

    def __iter__(self) -> Iterator[Slot]:
        return iter(self._slots)

    def active_slots(self) -> list[tuple[int, str]]:
        """Return ``(index, token)`` pairs for every active slot, in stored order.

        The list is a snapshot; later mutations do not affect it.
        """
        return [
            (index, slot.token)
            for index, slot in enumerate(self._slots)
            if isinstance(slot, Active)
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def deprecate(self, index: int) -> bool:
        """Empty the slot at ``index``.

        Returns:
            ``True`` if an active slot was emptied, ``False`` if the index was
            out of range or the slot was already empty.
        """
        if index < 0 or index >= len(self._slots):
            return False
        if isinstance(self._slots[index], Empty):
            return False
        self._slots[index] = EMPTY
        self._active -= 1
        return True

    def place(self, token: str) -> int:
        """Put ``token`` into the first empty slot, appending one if none exists.

        Returns:
            The position the token was placed at.
        """
        for index, slot in enumerate(self._slots):
            if isinstance(slot, Empty):
                self._slots[index] = Active(token)
                self._active += 1
                return index
        self._slots.append(Active(token))
        self._active += 1
        return len(self._slots) - 1

    def __contains__(self, token: object) -> bool:
        return any(isinstance(slot, Active) and slot.token == token for slot in self._slots)

    def __repr__(self) -> str:
        return f"CredentialPool(slots={len(self._slots)}, active={self._active})"
