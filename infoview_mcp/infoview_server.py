#!/usr/bin/env python3
"""Infoview MCP Server - live Lean goal state at cursor and pinned positions.

Sessions are in-memory only. Each session owns one Lean server process and an
infoview (cursor slot plus pins) fed from it.
"""

import asyncio
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP

from .info_slot import InfoSlot, InfoView
from .info_types import Position
from .lean_backend import LeanBackend, find_project_root
from .rpc import BackendError

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT = 4096
DEFAULT_SETTLE_TIMEOUT = 30


def _truncate_output(output: str, max_output: int) -> str:
    """Truncate output to max_output bytes, keeping the head (status line and goals)."""
    if max_output < 1:
        return f"ERROR: max_output must be positive (got {max_output})"
    if len(output) > max_output:
        return f"{output[:max_output]}\n\n[TRUNCATED: {len(output)} bytes, showing first {max_output}]"
    return output


@dataclass
class SessionEntry:
    """Registry entry for a Lean server session."""
    backend: LeanBackend
    view: InfoView
    started: datetime
    workdir: Path
    last_used: float = 0.0  # time.time() of last activity
    env: Optional[dict] = None  # env vars passed to the server process

    def __post_init__(self):
        if self.last_used == 0.0:
            self.last_used = time.time()


mcp = FastMCP("infoview", instructions="""Lean infoview - goal state at file positions:

1. info_state_at: goals, expected type and messages at line/col (pass file= to auto-start)
2. Edit the file, call info_state_at again (the file is re-sent when it changed)
3. info_pin keeps a position on screen while the cursor moves; info_view shows all slots
4. info_pause freezes a slot; info_refresh updates it once while paused

Positions are 1-indexed (line and column).
""")
_sessions: dict[str, SessionEntry] = {}


_SESSION_IDLE_TIMEOUT = 7200  # 2 hours
_PRUNE_INTERVAL = 300  # Check every 5 minutes at most
_last_prune_time = 0.0


async def _prune_idle_sessions():
    """Stop and remove sessions idle longer than _SESSION_IDLE_TIMEOUT.

    Throttled to run at most once per _PRUNE_INTERVAL seconds.
    """
    global _last_prune_time
    now = time.time()
    if now - _last_prune_time < _PRUNE_INTERVAL:
        return
    _last_prune_time = now
    to_prune = [
        name for name, entry in _sessions.items()
        if now - entry.last_used > _SESSION_IDLE_TIMEOUT
    ]
    for name in to_prune:
        entry = _sessions.get(name)
        if not entry:
            continue
        # Re-check: session may have been touched during a prior await
        if time.time() - entry.last_used <= _SESSION_IDLE_TIMEOUT:
            continue
        _sessions.pop(name, None)
        logger.info("pruning idle session %s", name)
        entry.view.close()
        await entry.backend.stop()


async def _get_entry(name: str) -> Optional[SessionEntry]:
    """Get session from registry, or None if not found. Triggers idle pruning."""
    await _prune_idle_sessions()
    entry = _sessions.get(name)
    if entry:
        entry.last_used = time.time()
    return entry


def _format_age(secs: int) -> str:
    if secs < 60:
        return f"{secs}s"
    elif secs < 3600:
        return f"{secs // 60}m"
    else:
        return f"{secs / 3600:.1f}h"


def _find_slot(entry: SessionEntry, slot: str) -> tuple[Optional[InfoSlot], str]:
    """Resolve a slot name; on failure return (None, error message)."""
    found = entry.view.slot(slot)
    if found is None:
        names = ", ".join(n for n, _ in entry.view.slots()) or "none"
        return None, f"ERROR: No slot '{slot}'. Available: {names}"
    return found, ""


@mcp.tool()
async def info_start(workdir: str, name: str = "default", env: dict = None) -> str:
    """Start a Lean server session.

    Idempotent - returns the existing session if already running.
    Usually called automatically by info_state_at (via file= parameter).

    Args:
        workdir: Lean project root (directory with lakefile or lean-toolchain)
        name: Session identifier
        env: Optional environment variables for the server process

    Returns: Session status
    """
    await _prune_idle_sessions()
    if name in _sessions:
        entry = _sessions[name]
        if entry.backend.is_running:
            return f"Session '{name}' already running.\nWorkdir: {entry.workdir}"
        # Dead session - clean up
        entry.view.close()
        del _sessions[name]

    workdir_path = Path(workdir).resolve()
    if not workdir_path.exists():
        return f"ERROR: Working directory does not exist: {workdir}"

    backend = LeanBackend(str(workdir_path), env=env)
    try:
        result = await backend.start()
    except (BackendError, OSError, asyncio.TimeoutError) as e:
        await backend.stop()
        return f"ERROR starting Lean server: {str(e) or type(e).__name__}"

    # Another caller may have registered this name while we were starting
    existing = _sessions.get(name)
    if existing and existing.backend.is_running:
        await backend.stop()
        return f"Session '{name}' already running.\nWorkdir: {existing.workdir}"

    _sessions[name] = SessionEntry(backend, InfoView(backend), datetime.now(), workdir_path, env=env)
    return f"Session '{name}' started. {result}\nWorkdir: {workdir_path}"


@mcp.tool()
async def info_sessions() -> str:
    """List active sessions with their workdir, age, status and slots."""
    await _prune_idle_sessions()
    if not _sessions:
        return "No active sessions."

    lines = ["SESSION      WORKDIR                                    AGE     IDLE    STATUS   SLOTS"]
    lines.append("-" * 100)

    now = time.time()
    for name, entry in _sessions.items():
        status = "running" if entry.backend.is_running else "dead"
        age = _format_age(int((datetime.now() - entry.started).total_seconds()))
        idle = _format_age(int(now - entry.last_used))
        workdir_str = str(entry.workdir)
        if len(workdir_str) > 40:
            workdir_str = "..." + workdir_str[-37:]
        slots = ", ".join(n for n, _ in entry.view.slots()) or "(none)"
        lines.append(f"{name:<12} {workdir_str:<42} {age:<7} {idle:<7} {status:<8} {slots}")

    return "\n".join(lines)


@mcp.tool()
async def info_stop(session: str = "default") -> str:
    """Terminate a session and its Lean server.

    Args:
        session: Session name (default: "default")

    Returns: Confirmation message
    """
    entry = _sessions.pop(session, None)
    if entry:
        entry.view.close()
        await entry.backend.stop()
        return f"Session '{session}' stopped."
    return f"Session '{session}' not found."


async def _ensure_session(file_path: Path, workdir: Optional[str], session: str) -> tuple[Optional[SessionEntry], str]:
    """Start (or reuse) the session serving `file_path` and send the file's current text."""
    entry = await _get_entry(session)
    target_workdir = Path(workdir).resolve() if workdir else find_project_root(file_path)

    if entry and entry.backend.is_running and workdir and entry.workdir != target_workdir:
        await info_stop.fn(session)
        entry = None

    if not entry or not entry.backend.is_running:
        start_env = entry.env if entry else None
        start_result = await info_start.fn(workdir=str(target_workdir), name=session, env=start_env)
        if start_result.startswith("ERROR"):
            return None, start_result
        entry = await _get_entry(session)

    try:
        if await entry.backend.sync_document(file_path):
            # Slots whose position did not move still show goals for the old text
            entry.view.document_changed(file_path.resolve().as_uri())
    except FileNotFoundError:
        return None, f"ERROR: File not found: {file_path}"
    except (BackendError, OSError) as e:
        return None, f"ERROR: Could not send {file_path.name} to the server: {e}"
    return entry, ""


async def _render_settled(slot: InfoSlot, timeout: float, max_output: int) -> str:
    settled = await slot.settle(timeout)
    output = slot.render()
    if not settled:
        output += f"\n\n[Still updating after {timeout}s - call info_view to check again]"
    return _truncate_output(output, max_output)


@mcp.tool()
async def info_state_at(
    line: int,
    col: int = 1,
    file: str = None,
    workdir: str = None,
    timeout: float = DEFAULT_SETTLE_TIMEOUT,
    max_output: int = DEFAULT_MAX_OUTPUT,
    session: str = "default",
) -> str:
    """Move the cursor and show the infoview at a file position.

    Re-sends the file if it changed on disk, then waits for the cursor slot to
    finish updating.

    Args:
        line: 1-indexed line number
        col: 1-indexed column number (default 1)
        file: Path to .lean file (defaults to the cursor's current file)
        workdir: Lean project root (default: nearest lakefile/lean-toolchain)
        timeout: Max seconds to wait for the goals (default 30)
        max_output: Max bytes of output (default 4096)
        session: Session name (default: "default")

    Returns: Location and status, tactic state, expected type, widgets, messages
    """
    if file:
        file_path = Path(file).resolve()
    else:
        entry = await _get_entry(session)
        if not entry or not entry.view.cursor:
            return f"ERROR: No cursor for session '{session}'. Pass file= to open a file."
        file_path = entry.view.cursor.position.path

    entry, error = await _ensure_session(file_path, workdir, session)
    if error:
        return error

    try:
        pos = Position.from_path(file_path, line, col)
    except ValueError as e:
        return f"ERROR: {e}"

    slot = entry.view.move_cursor(pos)
    return await _render_settled(slot, timeout, max_output)


@mcp.tool()
async def info_view(max_output: int = DEFAULT_MAX_OUTPUT, session: str = "default") -> str:
    """Show every slot (cursor first, then pins) as currently displayed.

    Does not wait for pending updates.

    Args:
        max_output: Max bytes of output (default 4096)
        session: Session name (default: "default")
    """
    entry = await _get_entry(session)
    if not entry:
        return f"ERROR: Session '{session}' not found."
    slots = entry.view.slots()
    if not slots:
        return "No slots. Use info_state_at to place the cursor."

    blocks = []
    for name, slot in slots:
        header = "[cursor]" if name == "cursor" else f"[pin {name}]"
        blocks.append(f"{header}\n{slot.render()}")
    return _truncate_output("\n\n".join(blocks), max_output)


@mcp.tool()
async def info_pin(file: str = None, line: int = None, col: int = 1, session: str = "default") -> str:
    """Pin a position so it stays displayed while the cursor moves.

    Args:
        file: Path to .lean file (omit with line to pin the cursor position)
        line: 1-indexed line number
        col: 1-indexed column number (default 1)
        session: Session name (default: "default")

    Returns: Pin id, used by info_unpin and as slot name
    """
    if file is None and line is None:
        entry = await _get_entry(session)
        if not entry:
            return f"ERROR: Session '{session}' not found."
        try:
            pin_id = entry.view.pin()
        except ValueError as e:
            return f"ERROR: {e}"
    else:
        if file is None or line is None:
            return "ERROR: Pass both file and line, or neither to pin the cursor."
        file_path = Path(file).resolve()
        entry, error = await _ensure_session(file_path, None, session)
        if error:
            return error
        try:
            pin_id = entry.view.pin(Position.from_path(file_path, line, col))
        except ValueError as e:
            return f"ERROR: {e}"
    return f"Pinned {entry.view.pins[pin_id].position} as pin {pin_id}."


@mcp.tool()
async def info_unpin(pin: int, session: str = "default") -> str:
    """Remove a pinned slot.

    Args:
        pin: Pin id returned by info_pin
        session: Session name (default: "default")
    """
    entry = await _get_entry(session)
    if not entry:
        return f"ERROR: Session '{session}' not found."
    if entry.view.unpin(pin):
        return f"Unpinned {pin}."
    return f"ERROR: No pin {pin}."


async def _set_paused(slot: str, session: str, paused: Optional[bool]) -> str:
    entry = await _get_entry(session)
    if not entry:
        return f"ERROR: Session '{session}' not found."
    found, error = _find_slot(entry, slot)
    if error:
        return error
    if paused is None:
        entry.view.toggle_paused(slot)
    else:
        found.set_paused(paused)
    return f"Slot '{slot}' {'paused' if found.paused else 'updating'}."


@mcp.tool()
async def info_pause(slot: str = "cursor", session: str = "default") -> str:
    """Freeze a slot's display. Updates keep running and are shown on resume.

    Args:
        slot: "cursor" or a pin id
        session: Session name (default: "default")
    """
    return await _set_paused(slot, session, True)


@mcp.tool()
async def info_resume(slot: str = "cursor", session: str = "default") -> str:
    """Resume a paused slot, showing its latest result immediately.

    Args:
        slot: "cursor" or a pin id
        session: Session name (default: "default")
    """
    return await _set_paused(slot, session, False)


@mcp.tool()
async def info_toggle_paused(slot: str = "cursor", session: str = "default") -> str:
    """Pause a running slot or resume a paused one.

    Args:
        slot: "cursor" or a pin id
        session: Session name (default: "default")
    """
    return await _set_paused(slot, session, None)


@mcp.tool()
async def info_refresh(slot: str = "cursor", max_output: int = DEFAULT_MAX_OUTPUT, session: str = "default") -> str:
    """Fetch a slot's goals now and display them, even if the slot is paused.

    Args:
        slot: "cursor" or a pin id
        max_output: Max bytes of output (default 4096)
        session: Session name (default: "default")
    """
    entry = await _get_entry(session)
    if not entry:
        return f"ERROR: Session '{session}' not found."
    found, error = _find_slot(entry, slot)
    if error:
        return error
    await found.refresh(DEFAULT_SETTLE_TIMEOUT)
    return _truncate_output(found.render(), max_output)


@mcp.tool()
async def info_copy_to_comment(slot: str = "cursor", session: str = "default") -> str:
    """Displayed goals of a slot as a Lean block comment, ready to paste.

    Args:
        slot: "cursor" or a pin id
        session: Session name (default: "default")
    """
    entry = await _get_entry(session)
    if not entry:
        return f"ERROR: Session '{session}' not found."
    found, error = _find_slot(entry, slot)
    if error:
        return error
    text = found.copy_to_comment()
    if text is None:
        return "No goals to copy."
    return text


def main():
    """CLI entry point for the infoview MCP server."""
    import argparse

    parser = argparse.ArgumentParser(description="Lean infoview MCP server")
    parser.add_argument(
        "--transport",
        choices=["stdio", "http", "sse"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    parser.add_argument("--port", type=int, default=8000, help="Port for HTTP/SSE (default: 8000)")
    parser.add_argument("--host", default="127.0.0.1", help="Host for HTTP/SSE (default: 127.0.0.1)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = "DEBUG" if args.verbose else os.environ.get("INFOVIEW_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.transport == "stdio":
        mcp.run(show_banner=False)
    else:
        print(f"Infoview MCP server starting on {args.host}:{args.port} ({args.transport})", file=sys.stderr)
        mcp.run(transport=args.transport, host=args.host, port=args.port, show_banner=False)


if __name__ == "__main__":
    main()
