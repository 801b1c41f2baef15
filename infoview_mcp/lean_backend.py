"""Lean language server subprocess, spoken to over LSP JSON-RPC on stdio."""

import asyncio
import hashlib
import json
import logging
import os
import shlex
import signal
from pathlib import Path
from typing import Callable, Optional

from .info_types import Position
from .rpc import RPC_NEEDS_RECONNECT, BackendError, RpcError

logger = logging.getLogger(__name__)

LEAN_SERVER_CMD = os.environ.get("LEAN_SERVER_CMD", "")
REQUEST_TIMEOUT = float(os.environ.get("INFOVIEW_REQUEST_TIMEOUT", "30"))
KEEPALIVE_INTERVAL = 10  # seconds; the server drops RPC sessions idle for longer than ~30s
WIDGETS_V1_VERSION = (0, 1, 2)  # first server version with interactive goals and widgets

_PROJECT_MARKERS = ("lakefile.lean", "lakefile.toml", "lean-toolchain")


def find_project_root(file: Path) -> Path:
    """Nearest ancestor directory holding a lakefile or lean-toolchain."""
    file = Path(file).resolve()
    for d in file.parents:
        if any((d / m).exists() for m in _PROJECT_MARKERS):
            return d
    return file.parent


def server_command(workdir: Path) -> list[str]:
    if LEAN_SERVER_CMD:
        return shlex.split(LEAN_SERVER_CMD)
    if (workdir / "lakefile.lean").exists() or (workdir / "lakefile.toml").exists():
        return ["lake", "serve"]
    return ["lean", "--server"]


def parse_version(text: Optional[str]) -> tuple[int, int, int]:
    """"0.1.2" -> (0, 1, 2). Missing parts are 0; garbage is (0, 0, 0)."""
    parts = (text or "").strip().split(".")
    nums = []
    for p in parts[:3]:
        try:
            nums.append(int(p))
        except ValueError:
            return (0, 0, 0)
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums)


def range_contains(rng: dict, pos: Position) -> bool:
    start, end = rng["start"], rng["end"]
    here = (pos.line, pos.character)
    return (start["line"], start["character"]) <= here <= (end["line"], end["character"])


def encode_message(msg: dict) -> bytes:
    body = json.dumps(msg, ensure_ascii=False).encode("utf-8")
    return b"Content-Length: " + str(len(body)).encode("ascii") + b"\r\n\r\n" + body


async def read_message(reader: asyncio.StreamReader) -> Optional[dict]:
    """Read one framed message. None at end of stream."""
    length = None
    while True:
        line = await reader.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            if length is None:
                raise BackendError("LSP message without Content-Length header")
            break
        name, _, value = line.decode("ascii").partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())
    body = await reader.readexactly(length)
    return json.loads(body.decode("utf-8"))


class LeanBackend:
    """One Lean server process, shared by every slot of a session.

    Besides request/response it tracks what the server pushes: which ranges
    are still being elaborated ($/lean/fileProgress) and the diagnostics of
    each document.
    """

    def __init__(self, workdir: str = ".", env: dict | None = None,
                 request_timeout: float = REQUEST_TIMEOUT):
        self.workdir = Path(workdir)
        self.env = env  # Extra env vars to merge with os.environ
        self.request_timeout = request_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.server_info: dict = {}
        self.capabilities: dict = {}

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}

        self._documents: dict[str, tuple[int, str]] = {}  # uri -> (version, content hash)
        self._rpc_sessions: dict[str, asyncio.Task] = {}  # uri -> connect task
        self._progress: dict[str, list[dict]] = {}
        self._diagnostics: dict[str, list[dict]] = {}
        self._progress_listeners: list[Callable[[str], None]] = []

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> str:
        """Start the server and run the LSP handshake."""
        if self.is_running:
            return "Lean server already running"

        proc_env = os.environ.copy()
        if self.env:
            proc_env.update(self.env)

        cmd = server_command(self.workdir)
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workdir,
                env=proc_env,
                start_new_session=True,  # New process group for clean kill
            )
        except FileNotFoundError as e:
            raise BackendError(f"Cannot run {cmd[0]}: {e}") from e

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        await self.attach(self.process.stdout, self.process.stdin)
        version = self.server_info.get("version", "unknown")
        return f"Lean server started (PID {self.process.pid}, version {version})"

    async def attach(self, reader: asyncio.StreamReader, writer) -> dict:
        """Handshake over an already-connected stream pair. Returns server capabilities."""
        self._reader = reader
        self._writer = writer
        self._reader_task = asyncio.create_task(self._read_loop())

        result = await self.request("initialize", {
            "processId": os.getpid(),
            "rootUri": self.workdir.resolve().as_uri(),
            "capabilities": {"window": {"workDoneProgress": False}},
            "clientInfo": {"name": "infoview-mcp"},
        }, timeout=60)
        result = result or {}
        self.server_info = result.get("serverInfo") or {}
        self.capabilities = result.get("capabilities") or {}
        await self.notify("initialized", {})

        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        return self.capabilities

    async def stop(self):
        """Shut the server down, killing its process group if it lingers."""
        if self._keepalive_task:
            self._keepalive_task.cancel()
            await asyncio.gather(self._keepalive_task, return_exceptions=True)
            self._keepalive_task = None

        if self.is_running:
            try:
                await self.request("shutdown", None, timeout=2)
                await self.notify("exit", None)
            except (RpcError, BackendError, OSError, asyncio.TimeoutError):
                pass  # Best effort - the process group is killed below

        if self.process and self.process.returncode is None:
            try:
                os.killpg(os.getpgid(self.process.pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pass
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5)
            except asyncio.TimeoutError:
                try:
                    self.process.kill()
                    await self.process.wait()
                except ProcessLookupError:
                    pass

        tasks = [t for t in (self._reader_task, self._stderr_task, *self._rpc_sessions.values())
                 if t and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._fail_pending(BackendError("Lean server stopped"))

        self.process = None
        self._reader = self._writer = None
        self._reader_task = self._stderr_task = None
        self._documents.clear()
        self._rpc_sessions.clear()
        self._progress.clear()
        self._diagnostics.clear()

    @property
    def is_running(self) -> bool:
        if self.process is not None and self.process.returncode is not None:
            return False
        return self._reader_task is not None and not self._reader_task.done()

    @property
    def server_version(self) -> tuple[int, int, int]:
        return parse_version(self.server_info.get("version"))

    def has_widgets_v1(self) -> bool:
        return self.server_version >= WIDGETS_V1_VERSION

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # -- transport ------------------------------------------------------------

    def _write(self, msg: dict):
        if self._writer is None:
            raise BackendError("Lean server not running")
        self._writer.write(encode_message(msg))

    async def notify(self, method: str, params):
        self._write({"jsonrpc": "2.0", "method": method, "params": params})
        await self._writer.drain()

    async def request(self, method: str, params, timeout: Optional[float] = None):
        """Send a request and wait for its result. Error responses raise RpcError."""
        if not self.is_running:
            raise BackendError("Lean server not running")
        req_id = self._next_id
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future

        try:
            self._write({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params})
            await self._writer.drain()
            return await asyncio.wait_for(future, timeout=timeout or self.request_timeout)
        except asyncio.TimeoutError:
            if self._writer is not None:
                self._write({"jsonrpc": "2.0", "method": "$/cancelRequest", "params": {"id": req_id}})
            raise
        finally:
            self._pending.pop(req_id, None)

    async def _read_loop(self):
        try:
            while True:
                msg = await read_message(self._reader)
                if msg is None:
                    break
                self._dispatch(msg)
        except (asyncio.IncompleteReadError, BackendError, ValueError) as e:
            logger.warning("Lean server connection broken: %s", e)
        finally:
            self._fail_pending(BackendError("Lean server closed the connection"))

    async def _drain_stderr(self):
        while self.process and self.process.stderr:
            line = await self.process.stderr.readline()
            if not line:
                break
            logger.debug("lean: %s", line.decode(errors="replace").rstrip())

    def _fail_pending(self, err: Exception):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(err)
        self._pending.clear()

    def _dispatch(self, msg: dict):
        method = msg.get("method")
        if method is None:
            future = self._pending.get(msg.get("id"))
            if future is None or future.done():
                return
            if "error" in msg:
                future.set_exception(RpcError.from_response(msg["error"]))
            else:
                future.set_result(msg.get("result"))
        elif "id" in msg:
            # Server-to-client request (registerCapability, configuration, ...)
            self._write({"jsonrpc": "2.0", "id": msg["id"], "result": None})
        elif method == "$/lean/fileProgress":
            params = msg["params"]
            uri = params["textDocument"]["uri"]
            self._progress[uri] = params.get("processing", [])
            for listener in list(self._progress_listeners):
                listener(uri)
        elif method == "textDocument/publishDiagnostics":
            params = msg["params"]
            self._diagnostics[params["uri"]] = params.get("diagnostics", [])
        else:
            logger.debug("ignoring notification %s", method)

    # -- documents ------------------------------------------------------------

    async def sync_document(self, path: Path) -> bool:
        """Open `path` on the server, or send its new text if it changed.

        Returns True if anything was sent.
        """
        path = Path(path).resolve()
        uri = path.as_uri()
        text = path.read_text()  # Let FileNotFoundError propagate
        digest = hashlib.sha256(text.encode()).hexdigest()

        doc = self._documents.get(uri)
        if doc is None:
            self._documents[uri] = (1, digest)
            await self.notify("textDocument/didOpen", {
                "textDocument": {"uri": uri, "languageId": "lean4", "version": 1, "text": text},
            })
            return True

        version, old_digest = doc
        if old_digest == digest:
            return False
        version += 1
        self._documents[uri] = (version, digest)
        await self.notify("textDocument/didChange", {
            "textDocument": {"uri": uri, "version": version},
            "contentChanges": [{"text": text}],
        })
        return True

    def on_progress(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Call `listener(uri)` on every processing update. Returns an unsubscribe function."""
        self._progress_listeners.append(listener)

        def unsubscribe():
            if listener in self._progress_listeners:
                self._progress_listeners.remove(listener)
        return unsubscribe

    def is_processing_at(self, pos: Position) -> bool:
        return any(range_contains(p["range"], pos) for p in self._progress.get(pos.uri, []))

    def diagnostics_at(self, pos: Position) -> list[dict]:
        """Diagnostics whose line span covers the position's line."""
        found = []
        for diag in self._diagnostics.get(pos.uri, []):
            rng = diag.get("fullRange") or diag["range"]
            if rng["start"]["line"] <= pos.line <= rng["end"]["line"]:
                found.append(diag)
        return found

    # -- RPC sessions ---------------------------------------------------------

    async def _connect(self, uri: str) -> str:
        result = await self.request("$/lean/rpc/connect", {"uri": uri})
        return result["sessionId"]

    async def _rpc_session(self, uri: str) -> str:
        # One connect per document even when several calls start at once
        task = self._rpc_sessions.get(uri)
        if task is None or (task.done() and (task.cancelled() or task.exception())):
            task = asyncio.create_task(self._connect(uri))
            self._rpc_sessions[uri] = task
        return await asyncio.shield(task)

    async def rpc_call(self, pos: Position, method: str, params):
        """Call a server-side RPC method, reconnecting once if the session expired."""
        for attempt in range(2):
            session_id = await self._rpc_session(pos.uri)
            try:
                return await self.request("$/lean/rpc/call", {
                    **pos.text_document_position(),
                    "sessionId": session_id,
                    "method": method,
                    "params": params,
                })
            except RpcError as e:
                if e.code != RPC_NEEDS_RECONNECT or attempt > 0:
                    raise
                logger.debug("RPC session for %s expired, reconnecting", pos.uri)
                self._rpc_sessions.pop(pos.uri, None)

    async def _keepalive_loop(self):
        while True:
            await asyncio.sleep(KEEPALIVE_INTERVAL)
            for uri, task in list(self._rpc_sessions.items()):
                if not task.done() or task.cancelled() or task.exception():
                    continue
                try:
                    await self.notify("$/lean/rpc/keepAlive", {"uri": uri, "sessionId": task.result()})
                except (BackendError, OSError) as e:
                    logger.warning("keep-alive for %s failed: %s", uri, e)
                    return

    # -- queries --------------------------------------------------------------

    async def get_goals(self, pos: Position):
        return await self.rpc_call(pos, "Lean.Widget.getInteractiveGoals", pos.text_document_position())

    async def get_term_goal(self, pos: Position):
        return await self.rpc_call(pos, "Lean.Widget.getInteractiveTermGoal", pos.text_document_position())

    async def get_widgets(self, pos: Position):
        return await self.rpc_call(pos, "Lean.Widget.getWidgets", pos.to_lsp())

    async def get_plain_goal(self, pos: Position):
        return await self.request("$/lean/plainGoal", pos.text_document_position())

    async def get_plain_term_goal(self, pos: Position):
        return await self.request("$/lean/plainTermGoal", pos.text_document_position())
