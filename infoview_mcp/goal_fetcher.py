"""One round of goal queries for a position."""

import asyncio
import logging

from .goal_format import (
    goal_from_interactive, goals_from_interactive, goals_from_plain,
    term_goal_from_plain, widgets_from_response,
)
from .info_types import FetchResult, InfoStatus, Position
from .rpc import RpcError, discard_method_not_found

logger = logging.getLogger(__name__)


class GoalFetcher:
    """Issue the goal, term-goal and widget queries for one fetch cycle.

    Pure request/response: the result is returned, never stored. Failures
    propagate as raised by the backend; classifying them is the guard's job.

    The backend is duck-typed: has_widgets_v1(), get_goals(), get_term_goal(),
    get_widgets(), get_plain_goal(), get_plain_term_goal().
    """

    def __init__(self, backend):
        self.backend = backend
        self._widgets_v1: bool | None = None

    @property
    def interactive(self) -> bool:
        """Whether the server speaks the interactive RPC protocol (checked once)."""
        if self._widgets_v1 is None:
            self._widgets_v1 = bool(self.backend.has_widgets_v1())
            logger.debug("interactive goals: %s", self._widgets_v1)
        return self._widgets_v1

    async def fetch(self, pos: Position) -> FetchResult:
        if self.interactive:
            return await self._fetch_interactive(pos)
        return await self._fetch_plain(pos)

    async def _fetch_interactive(self, pos: Position) -> FetchResult:
        # gather() starts every request before awaiting any, and marks the
        # exceptions of the others as retrieved when one fails first
        goals, term_goal, widgets = await asyncio.gather(
            self.backend.get_goals(pos),
            self.backend.get_term_goal(pos),
            discard_method_not_found(self.backend.get_widgets(pos)),
        )
        return FetchResult(
            status=InfoStatus.READY,
            goals=goals_from_interactive(goals),
            term_goal=goal_from_interactive(term_goal) if term_goal else None,
            widgets=widgets_from_response(widgets) if widgets is not None else (),
        )

    async def _plain_term_goal(self, pos: Position):
        try:
            return await self.backend.get_plain_term_goal(pos)
        except RpcError as e:
            # Older servers have no term goal request at all
            logger.debug("plain term goal unavailable at %s: %r", pos, e)
            return None

    async def _fetch_plain(self, pos: Position) -> FetchResult:
        goals, term_goal = await asyncio.gather(
            self.backend.get_plain_goal(pos),
            self._plain_term_goal(pos),
        )
        return FetchResult(
            status=InfoStatus.READY,
            goals=goals_from_plain(goals),
            term_goal=term_goal_from_plain(term_goal),
        )
