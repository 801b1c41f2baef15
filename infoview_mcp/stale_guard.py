"""Failure classification around a fetch cycle."""

import logging

from .info_types import FetchResult, InfoStatus, Position
from .rpc import describe_error, is_content_modified

logger = logging.getLogger(__name__)


class StaleRequestGuard:
    """Run a fetcher until it produces something worth committing.

    - content modified (-32801): the document changed under the request;
      fetch again at the same position, sequentially, until it settles
    - failure with no content: return None ("clear the error, keep status")
    - anything else: an error result carrying the serialized failure
    """

    def __init__(self, fetcher):
        self.fetcher = fetcher
        self.retries = 0  # total stale retries, for diagnostics

    async def run(self, pos: Position) -> FetchResult | None:
        while True:
            try:
                return await self.fetcher.fetch(pos)
            except Exception as e:
                if is_content_modified(e):
                    self.retries += 1
                    logger.debug("document changed during request at %s, retrying", pos)
                    continue
                return self._classify(pos, e)

    def _classify(self, pos: Position, err: Exception) -> FetchResult | None:
        text = describe_error(err)
        if text is None:
            logger.debug("empty error at %s ignored", pos)
            return None
        logger.debug("goal request at %s failed: %s", pos, text)
        return FetchResult(status=InfoStatus.ERROR, error=f"Error fetching goals: {text}")
