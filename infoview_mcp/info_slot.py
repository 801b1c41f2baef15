"""Information slots: one tracked position each, sharing a backend.

An InfoSlot turns position and processing changes into throttled fetch cycles:

    source moves -> DelayedThrottle -> StaleRequestGuard(GoalFetcher)
                 -> SnapshotCommitter -> PauseController -> display

The InfoView holds the cursor slot and any pinned slots of one server session.
"""

import asyncio
import logging
from typing import Callable, Optional

from .goal_fetcher import GoalFetcher
from .goal_format import comment_block, goals_to_string, render_display
from .info_types import DisplayState, InfoKind, Position
from .position_source import CursorPositionSource, PinnedPositionSource, PositionSource
from .scheduler import FAST_DELAY, SLOW_DELAY, DelayedThrottle
from .snapshot import PauseController, SnapshotCommitter
from .stale_guard import StaleRequestGuard

logger = logging.getLogger(__name__)


class InfoSlot:
    """Keeps one DisplayState up to date with the server's view of a position."""

    def __init__(self, source: PositionSource, backend, *,
                 fast: float = FAST_DELAY, slow: float = SLOW_DELAY):
        self.source = source
        self.backend = backend
        self.kind: InfoKind = source.kind

        self._scheduler = DelayedThrottle(fast, slow)
        self._guard = StaleRequestGuard(GoalFetcher(backend))
        self._pause = PauseController(DisplayState(kind=self.kind, position=source.position))
        self._committer = SnapshotCommitter(self.kind, source.position, publish=self._pause.publish)

        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = source.subscribe(self._on_move)
        self._closed = False

    # -- inputs ---------------------------------------------------------------

    @property
    def position(self) -> Position:
        """Position being tracked (may be ahead of the displayed one)."""
        return self.source.position

    @property
    def processing(self) -> bool:
        return self._scheduler.busy

    def start(self) -> "InfoSlot":
        """Initial fetch, with the processing flag read from the backend."""
        self._scheduler.busy = bool(self.backend.is_processing_at(self.position))
        self.schedule_update()
        return self

    def _on_move(self, pos: Position):
        self._scheduler.busy = bool(self.backend.is_processing_at(pos))
        self.schedule_update()

    def update_processing(self):
        """Re-read whether the server is busy at our position; update if it changed."""
        busy = bool(self.backend.is_processing_at(self.position))
        if busy != self._scheduler.busy:
            self._scheduler.busy = busy
            self.schedule_update()

    # -- cycles ---------------------------------------------------------------

    def schedule_update(self):
        if self._closed:
            return
        task = asyncio.create_task(self.trigger_update())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("update of %s slot at %s failed", self.kind.value, self.position,
                         exc_info=exc)

    async def trigger_update(self):
        """Schedule a throttled cycle. Returns once that cycle (or a newer one) is queued."""
        return await self._scheduler.trigger(self._fetch_cycle)

    async def _fetch_cycle(self, force: bool = False) -> bool:
        """One fetch cycle. False if a newer cycle superseded it."""
        pos = self.source.position
        generation = self._committer.begin_cycle()
        result = await self._guard.run(pos)
        if result is None:
            return self._committer.clear_error(generation, force=force)
        return self._committer.commit(generation, pos, result, force=force)

    async def refresh(self, timeout: Optional[float] = None):
        """Run one cycle now and show its result, even while paused.

        If a throttled cycle started meanwhile and won the commit, wait for it
        and show what it committed instead.
        """
        if await self._fetch_cycle(force=True):
            return
        await self.settle(timeout)
        self._pause.publish(self._committer.state, force=True)

    async def settle(self, timeout: Optional[float] = None) -> bool:
        """Wait for scheduled and running cycles. False if `timeout` ran out first."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending:
                return False
        return True

    # -- pause ----------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self._pause.paused

    def set_paused(self, paused: bool):
        self._pause.set_paused(paused)

    def toggle_paused(self) -> bool:
        return self._pause.toggle()

    # -- outputs --------------------------------------------------------------

    @property
    def display(self) -> DisplayState:
        """The snapshot a renderer should show."""
        return self._pause.applied

    @property
    def latest(self) -> DisplayState:
        """Most recent committed state, paused or not."""
        return self._committer.state

    def messages(self) -> list[dict]:
        return self.backend.diagnostics_at(self.display.position)

    def copy_to_comment(self) -> Optional[str]:
        goals = self.display.result.goals
        if goals is None:
            return None
        return comment_block(goals_to_string(goals))

    def render(self) -> str:
        return render_display(self.display, self.messages())

    def close(self):
        """Stop scheduling. In-flight backend calls are left to finish."""
        if self._closed:
            return
        self._closed = True
        self._scheduler.close()
        self._unsubscribe()
        self.source.dispose()


class InfoView:
    """The cursor slot and pinned slots of one server session."""

    def __init__(self, backend, *, fast: float = FAST_DELAY, slow: float = SLOW_DELAY,
                 on_pin_change: Callable[[int, Optional[Position]], None] | None = None):
        self.backend = backend
        self.fast = fast
        self.slow = slow
        self.on_pin_change = on_pin_change
        self.cursor: Optional[InfoSlot] = None
        self._cursor_source: Optional[CursorPositionSource] = None
        self.pins: dict[int, InfoSlot] = {}
        self._next_pin = 1
        self._unsubscribe = backend.on_progress(self._on_progress)

    def _make_slot(self, source: PositionSource) -> InfoSlot:
        return InfoSlot(source, self.backend, fast=self.fast, slow=self.slow).start()

    def move_cursor(self, pos: Position) -> InfoSlot:
        if self.cursor is None:
            self._cursor_source = CursorPositionSource(pos)
            self.cursor = self._make_slot(self._cursor_source)
        else:
            self._cursor_source.move(pos)
        return self.cursor

    def pin(self, pos: Optional[Position] = None) -> int:
        """Pin `pos` (default: the cursor position). Returns the pin id."""
        if pos is None:
            if self.cursor is None:
                raise ValueError("No cursor position to pin")
            pos = self.cursor.position
        pin_id = self._next_pin
        self._next_pin += 1
        self.pins[pin_id] = self._make_slot(PinnedPositionSource(pos))
        if self.on_pin_change:
            self.on_pin_change(pin_id, pos)
        return pin_id

    def unpin(self, pin_id: int) -> bool:
        slot = self.pins.pop(pin_id, None)
        if slot is None:
            return False
        slot.close()
        if self.on_pin_change:
            self.on_pin_change(pin_id, None)
        return True

    def slot(self, name: str) -> Optional[InfoSlot]:
        """Look up "cursor" or a pin id."""
        if name == "cursor":
            return self.cursor
        try:
            return self.pins.get(int(name))
        except ValueError:
            return None

    def document_changed(self, uri: str):
        """The text of `uri` changed: every slot showing it needs new goals."""
        for _, slot in self.slots():
            if slot.position.uri == uri:
                slot.schedule_update()

    def toggle_paused(self, name: str) -> bool:
        """Toggle pausing of the named slot. Returns the new paused flag."""
        slot = self.slot(name)
        if slot is None:
            raise KeyError(name)
        return slot.toggle_paused()

    def slots(self) -> list[tuple[str, InfoSlot]]:
        named = [("cursor", self.cursor)] if self.cursor else []
        named.extend((str(i), s) for i, s in sorted(self.pins.items()))
        return named

    def _on_progress(self, uri: str):
        for _, slot in self.slots():
            if slot.position.uri == uri:
                slot.update_processing()

    async def settle(self, timeout: Optional[float] = None) -> bool:
        results = await asyncio.gather(*(s.settle(timeout) for _, s in self.slots()))
        return all(results)

    def close(self):
        self._unsubscribe()
        for _, slot in self.slots():
            slot.close()
        self.pins.clear()
        self.cursor = None
        self._cursor_source = None
