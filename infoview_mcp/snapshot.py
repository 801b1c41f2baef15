"""Atomic publication of fetch results, and pausing of what gets shown.

A slot's state lives in exactly one DisplayState value. Every change builds a
new value and hands it to the PauseController in a single call, so a reader
sees either the previous snapshot or the next one, never a blend.
"""

import logging
from dataclasses import replace
from typing import Callable, Optional

from .info_types import DisplayState, FetchResult, InfoKind, InfoStatus, Position

logger = logging.getLogger(__name__)


class PauseController:
    """Two-state buffer: the `applied` snapshot is shown, `pending` waits out a pause."""

    def __init__(self, initial: DisplayState):
        self._applied = initial
        self._pending: Optional[DisplayState] = None
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def applied(self) -> DisplayState:
        return replace(self._applied, paused=self._paused)

    @property
    def pending(self) -> Optional[DisplayState]:
        return self._pending

    def publish(self, state: DisplayState, force: bool = False) -> bool:
        """Show `state`, or hold it while paused. Returns True if applied."""
        if self._paused and not force:
            self._pending = state
            return False
        self._applied = state
        self._pending = None
        return True

    def set_paused(self, paused: bool):
        if paused == self._paused:
            return
        self._paused = paused
        if not paused and self._pending is not None:
            self._applied = self._pending
            self._pending = None

    def toggle(self) -> bool:
        self.set_paused(not self._paused)
        return self._paused


class SnapshotCommitter:
    """Owns the latest DisplayState of a slot and the cycle generation counter.

    Each cycle gets a generation from begin_cycle(). Only the most recently
    issued generation may commit; a late answer for a superseded cycle is
    dropped rather than overwriting newer data.
    """

    def __init__(self, kind: InfoKind, position: Position,
                 publish: Callable[..., bool] | None = None):
        self._state = DisplayState(kind=kind, position=position)
        self._generation = 0
        self._publish = publish

    @property
    def state(self) -> DisplayState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _set(self, state: DisplayState, force: bool = False):
        self._state = state
        if self._publish is not None:
            self._publish(state, force=force)

    def begin_cycle(self) -> int:
        """Start a cycle: status becomes `updating`, everything else stays."""
        self._generation += 1
        self._set(self._state.with_status(InfoStatus.UPDATING))
        return self._generation

    def commit(self, generation: int, position: Position, result: FetchResult,
               force: bool = False) -> bool:
        """Replace result and position together. False if the cycle was superseded."""
        if not self.is_current(generation):
            logger.debug("dropping result of cycle %d (current %d) for %s",
                         generation, self._generation, position)
            return False
        self._set(replace(self._state, position=position, result=result), force=force)
        return True

    def clear_error(self, generation: int, force: bool = False) -> bool:
        """Drop the shown error but keep fields, position and status."""
        if not self.is_current(generation):
            return False
        result = replace(self._state.result, error=None)
        self._set(replace(self._state, result=result), force=force)
        return True
