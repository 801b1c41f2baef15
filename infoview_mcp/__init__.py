"""Lean infoview MCP server and update pipeline."""

from .info_types import Position, Goal, Hypothesis, Widget, FetchResult, DisplayState, InfoStatus, InfoKind
from .rpc import RpcError, BackendError, CONTENT_MODIFIED, METHOD_NOT_FOUND
from .scheduler import DelayedThrottle
from .goal_fetcher import GoalFetcher
from .stale_guard import StaleRequestGuard
from .snapshot import SnapshotCommitter, PauseController
from .info_slot import InfoSlot, InfoView
from .lean_backend import LeanBackend
from .infoview_server import mcp, _sessions, SessionEntry

__all__ = [
    "Position", "Goal", "Hypothesis", "Widget", "FetchResult", "DisplayState", "InfoStatus", "InfoKind",
    "RpcError", "BackendError", "CONTENT_MODIFIED", "METHOD_NOT_FOUND",
    "DelayedThrottle", "GoalFetcher", "StaleRequestGuard",
    "SnapshotCommitter", "PauseController",
    "InfoSlot", "InfoView",
    "LeanBackend",
    "mcp", "_sessions", "SessionEntry",
]
