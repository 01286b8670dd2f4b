from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loghound.obs.logging_setup import get_logger
from loghound.search.cancellation import USER_INTERRUPT, CancelToken
from loghound.search.types import OutputMode

logger = get_logger(__name__)

class DuplicateSearchId(KeyError):
    """A search with the same id is already in flight."""

@dataclass
class ActiveSearchState:
    search_id: str
    token: CancelToken
    output_mode: OutputMode
    targets: int
    started_at: float = field(default_factory=time.time)

class SearchRegistry:
    """In-memory registry of in-flight searches, keyed by search id.

    Entries live exactly as long as their search; nothing is kept once a
    search finishes.
    """

    def __init__(self):
        self._searches: Dict[str, ActiveSearchState] = {}

    def register(self, search_id: str, token: CancelToken, output_mode: OutputMode,
                 targets: int) -> ActiveSearchState:
        """Track a new search under the token that cancels it."""
        if search_id in self._searches:
            raise DuplicateSearchId(search_id)
        state = ActiveSearchState(
            search_id=search_id,
            token=token,
            output_mode=output_mode,
            targets=targets,
        )
        self._searches[search_id] = state
        logger.debug("Search registered", search_id=search_id, targets=targets)
        return state

    def unregister(self, search_id: str) -> None:
        self._searches.pop(search_id, None)

    def get(self, search_id: str) -> Optional[ActiveSearchState]:
        return self._searches.get(search_id)

    def cancel(self, search_id: str, reason: str = USER_INTERRUPT) -> Optional[bool]:
        """Fire a search's cancellation signal.

        Returns None for unknown ids, otherwise whether this call was the
        one that cancelled it.
        """
        state = self._searches.get(search_id)
        if state is None:
            return None
        fired = state.token.cancel(reason)
        if fired:
            logger.info("Search cancelled", search_id=search_id, reason=reason)
        return fired

    def list_active(self) -> List[ActiveSearchState]:
        return sorted(self._searches.values(), key=lambda s: s.started_at)

    def __len__(self) -> int:
        return len(self._searches)

# Global search registry instance
search_registry = SearchRegistry()
