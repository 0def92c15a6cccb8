"""Immutable snapshot holder with a single notification point."""
from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

S = TypeVar("S")

Listener = Callable[[S], None]


class Store(Generic[S]):
    """Holds one snapshot; every change replaces it wholesale and notifies once.

    Reducers must return a new value and never mutate the one they receive.
    """

    def __init__(self, initial: S) -> None:
        self._state = initial
        self._listeners: list[Listener[S]] = []

    @property
    def state(self) -> S:
        return self._state

    def update(self, reducer: Callable[[S], S]) -> S:
        new_state = reducer(self._state)
        if new_state is self._state:
            return new_state
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("Store listener failed")
        return new_state

    def subscribe(self, listener: Listener[S]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
