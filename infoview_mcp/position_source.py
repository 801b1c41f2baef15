"""Where a slot's position comes from: the editor cursor, or a pin."""

from typing import Callable

from .info_types import InfoKind, Position

Listener = Callable[[Position], None]


class PositionSource:
    kind: InfoKind

    def __init__(self, position: Position):
        self._position = position
        self._listeners: list[Listener] = []
        self._disposed = False

    @property
    def position(self) -> Position:
        return self._position

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener` on every real move. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _set(self, position: Position) -> bool:
        if self._disposed or position == self._position:
            return False
        self._position = position
        for listener in list(self._listeners):
            listener(position)
        return True

    def dispose(self):
        self._disposed = True
        self._listeners.clear()


class CursorPositionSource(PositionSource):
    """Follows cursor moves. Re-reports of the same position are ignored."""
    kind = InfoKind.CURSOR

    def move(self, position: Position) -> bool:
        return self._set(position)


class PinnedPositionSource(PositionSource):
    """A fixed position; never notifies."""
    kind = InfoKind.PIN
