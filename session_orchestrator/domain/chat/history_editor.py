from typing import List, Optional, Sequence
import structlog

from session_orchestrator.domain.chat.chat_projector import ChatProjector
from session_orchestrator.domain.engine.base import ChatSessionHandle
from session_orchestrator.domain.models.chat_state import (
    CanonicalHistoryItem, SimplifiedChatItem, SimplifiedModelItem,
    SimplifiedUserItem, SystemHistoryItem
)
from session_orchestrator.infrastructure.observability.logging import orchestrator_logger

logger = structlog.get_logger(__name__)


def canonical_index(history: Sequence[CanonicalHistoryItem], projected_index: int) -> Optional[int]:
    """Translate a projected index into a canonical history index"""

    seen = -1
    for index, item in enumerate(history):
        if isinstance(item, SystemHistoryItem):
            continue
        seen += 1
        if seen == projected_index:
            return index
    return None


def _find(projection: Sequence[SimplifiedChatItem], item_id: str) -> Optional[int]:
    for index, item in enumerate(projection):
        if item.id == item_id:
            return index
    return None


class HistoryEditor:
    """Structural edits to prior turns: delete-from and regenerate-from.

    Callers must hold the chat-session lock for the whole plan-and-apply so no
    prompt observes a partially truncated history.
    """

    def __init__(self, projector: ChatProjector):
        self.projector = projector

    def plan_delete(
        self,
        history: Sequence[CanonicalHistoryItem],
        projection: Sequence[SimplifiedChatItem],
        item_id: str
    ) -> Optional[int]:
        """Length to cut the history to so the target user turn and everything after it go"""

        projected = _find(projection, item_id)
        if projected is None or not isinstance(projection[projected], SimplifiedUserItem):
            logger.warning("Delete target not found", item_id=item_id)
            return None

        return canonical_index(history, projected)

    def plan_regenerate(
        self,
        history: Sequence[CanonicalHistoryItem],
        projection: Sequence[SimplifiedChatItem],
        item_id: str
    ) -> Optional[int]:
        """Length to cut the history to so only the preceding user turn is kept"""

        projected = _find(projection, item_id)
        if projected is None or not isinstance(projection[projected], SimplifiedModelItem):
            logger.warning("Regenerate target not found", item_id=item_id)
            return None

        for user_index in range(projected - 1, -1, -1):
            if isinstance(projection[user_index], SimplifiedUserItem):
                k = canonical_index(history, user_index)
                return k + 1 if k is not None else None

        # A model message is always preceded by a user message
        logger.warning("No user message precedes regenerate target", item_id=item_id)
        return None

    def apply(self, session: ChatSessionHandle, cut: int, action: str, item_id: str) -> List[CanonicalHistoryItem]:
        """Truncate the session history to `cut` items and prune ids and stats past it"""

        truncated = session.get_history()[:cut]
        session.set_history(truncated)
        self.projector.truncate(cut)

        orchestrator_logger.log_history_edit(action, item_id, cut_at=cut, remaining=len(truncated))
        return truncated
