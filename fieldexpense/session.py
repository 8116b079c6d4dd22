"""Generation guards for views that own asynchronous work.

A capture or signature view may be dismissed while its capture,
recognition or export is still running. Each opening of a view bumps a
generation counter; a result carrying an older generation is stale and
must be dropped without touching state.
"""

from dataclasses import dataclass

from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ViewToken:
    """Identifies one opening of a named view."""

    view: str
    generation: int


class ViewGuard:
    """Tracks which opening of each view is current."""

    def __init__(self) -> None:
        self._generations: dict[str, int] = {}
        self._open: set[str] = set()

    def open(self, view: str) -> ViewToken:
        """Open a view, invalidating tokens from any earlier opening."""
        generation = self._generations.get(view, 0) + 1
        self._generations[view] = generation
        self._open.add(view)
        logger.debug("Opened view %s (generation %d)", view, generation)
        return ViewToken(view, generation)

    def close(self, view: str) -> None:
        """Close a view. Outstanding tokens for it become stale."""
        if view in self._open:
            self._open.discard(view)
            self._generations[view] = self._generations.get(view, 0) + 1
            logger.debug("Closed view %s", view)

    def is_open(self, view: str) -> bool:
        return view in self._open

    def is_current(self, token: ViewToken) -> bool:
        return (
            token.view in self._open
            and self._generations.get(token.view) == token.generation
        )
