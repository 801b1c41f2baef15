"""Pytest fixtures for infoview tests."""

import asyncio
import inspect
import json
from collections import defaultdict

import pytest

from infoview_mcp.info_types import Position
from infoview_mcp.lean_backend import encode_message, range_contains
from infoview_mcp.rpc import RpcError


TEST_URI = "file:///work/Test.lean"


def goal_payload(target: str, hyps: dict[str, str] | None = None, user_name: str | None = None) -> dict:
    """An InteractiveGoal JSON object with plain (untagged) text."""
    goal = {
        "hyps": [{"names": names.split(), "type": {"text": t}} for names, t in (hyps or {}).items()],
        "type": {"text": target},
        "goalPrefix": "⊢ ",
    }
    if user_name:
        goal["userName"] = user_name
    return goal


def goals_at(pos: Position) -> dict:
    """Default goals: the target names the position, so cycles can be told apart."""
    return {"goals": [goal_payload(f"p {pos.line} {pos.character}", {"n": "Nat"})]}


class FakeBackend:
    """Scripted stand-in for LeanBackend.

    Each query pops the next queued outcome for its method, falling back to a
    default. An outcome may be a value, an exception (raised), a callable of
    the position, or an awaitable (awaited, so a test can hold a request open).
    """

    def __init__(self, widgets_v1: bool = True):
        self.widgets_v1 = widgets_v1
        self.version_checks = 0
        self.calls: list[tuple[str, Position]] = []
        self.queued: dict[str, list] = defaultdict(list)
        self.defaults = {
            "get_goals": goals_at,
            "get_term_goal": None,
            "get_widgets": {"widgets": []},
            "get_plain_goal": lambda pos: {"rendered": "", "goals": [f"n : Nat\n⊢ p {pos.line} {pos.character}"]},
            "get_plain_term_goal": None,
        }
        self.diagnostics: dict[str, list[dict]] = {}
        self.synced: list = []
        self.documents: dict = {}
        self.stopped = False
        self._processing: dict[str, list[dict]] = {}
        self._listeners = []

    def queue(self, method: str, *outcomes):
        self.queued[method].extend(outcomes)

    def calls_to(self, method: str) -> list[Position]:
        return [pos for m, pos in self.calls if m == method]

    async def _answer(self, method: str, pos: Position):
        self.calls.append((method, pos))
        outcome = self.queued[method].pop(0) if self.queued[method] else self.defaults[method]
        if callable(outcome):
            outcome = outcome(pos)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def has_widgets_v1(self) -> bool:
        self.version_checks += 1
        return self.widgets_v1

    async def get_goals(self, pos):
        return await self._answer("get_goals", pos)

    async def get_term_goal(self, pos):
        return await self._answer("get_term_goal", pos)

    async def get_widgets(self, pos):
        return await self._answer("get_widgets", pos)

    async def get_plain_goal(self, pos):
        return await self._answer("get_plain_goal", pos)

    async def get_plain_term_goal(self, pos):
        return await self._answer("get_plain_term_goal", pos)

    # progress and diagnostics

    def set_processing(self, uri: str, ranges: list[dict]):
        self._processing[uri] = [{"range": r} for r in ranges]
        for listener in list(self._listeners):
            listener(uri)

    def on_progress(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def is_processing_at(self, pos) -> bool:
        return any(range_contains(p["range"], pos) for p in self._processing.get(pos.uri, []))

    def diagnostics_at(self, pos) -> list[dict]:
        return [d for d in self.diagnostics.get(pos.uri, [])
                if d["range"]["start"]["line"] <= pos.line <= d["range"]["end"]["line"]]

    # session surface used by the MCP tools

    @property
    def is_running(self) -> bool:
        return not self.stopped

    async def sync_document(self, path):
        """True when the text differs from what was last sent, like LeanBackend."""
        if not path.exists():
            raise FileNotFoundError(path)
        self.synced.append(path)
        text = path.read_text()
        if self.documents.get(path) == text:
            return False
        self.documents[path] = text
        return True

    async def stop(self):
        self.stopped = True


def lsp_range(line: int, start: int, end_line: int | None = None, end: int = 0) -> dict:
    return {
        "start": {"line": line, "character": start},
        "end": {"line": line if end_line is None else end_line, "character": end},
    }


async def wait_until(predicate, timeout: float = 2.0):
    """Poll `predicate` on the event loop until true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


NO_REPLY = object()


class FakeLspServer:
    """In-memory peer for LeanBackend.attach().

    Acts as the client's writer (parsing each framed message) and feeds replies
    into `reader`. Handlers map a method to a function of params; raising
    RpcError sends an error response, returning NO_REPLY leaves it unanswered.
    """

    def __init__(self, version: str = "0.2.0"):
        self.reader = asyncio.StreamReader()
        self.received: list[dict] = []
        self.handlers = {
            "initialize": lambda params: {
                "capabilities": {"textDocumentSync": 2},
                "serverInfo": {"name": "Lean 4 Server", "version": version},
            },
        }
        self._buf = b""

    # writer interface

    def write(self, data: bytes):
        self._buf += data
        while True:
            head, sep, rest = self._buf.partition(b"\r\n\r\n")
            if not sep:
                return
            length = int(head.split(b":")[1])
            if len(rest) < length:
                return
            body, self._buf = rest[:length], rest[length:]
            self._handle(json.loads(body))

    async def drain(self):
        pass

    # server side

    def _handle(self, msg: dict):
        self.received.append(msg)
        if "id" not in msg or "method" not in msg:
            return
        handler = self.handlers.get(msg["method"])
        try:
            result = handler(msg["params"]) if handler else None
        except RpcError as e:
            self.send({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": e.code, "message": e.message}})
            return
        if result is NO_REPLY:
            return
        self.send({"jsonrpc": "2.0", "id": msg["id"], "result": result})

    def send(self, msg: dict):
        self.reader.feed_data(encode_message(msg))

    def notify(self, method: str, params: dict):
        self.send({"jsonrpc": "2.0", "method": method, "params": params})

    def messages(self, method: str) -> list[dict]:
        return [m for m in self.received if m.get("method") == method]


@pytest.fixture
def pos() -> Position:
    return Position(TEST_URI, 2, 4)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
