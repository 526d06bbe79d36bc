from typing import List, Optional, Sequence, Set
import uuid

from session_orchestrator.domain.models.chat_state import (
    CanonicalHistoryItem, IdSlot, ModelHistoryItem, ResponseBlock,
    SimplifiedChatItem, SimplifiedModelItem, SimplifiedUserItem, UserHistoryItem
)
from session_orchestrator.domain.chat.token_accountant import TokenAccountant
from session_orchestrator.domain.streaming.stream_reconciler import fold_all, response_to_fragments


class IdArena:
    """Stable item ids indexed by canonical history position"""

    def __init__(self, slots: Optional[Sequence[Optional[IdSlot]]] = None):
        self._slots: List[Optional[IdSlot]] = list(slots or [])

    def __len__(self) -> int:
        return len(self._slots)

    def resolve(self, position: int, kind: str, text: Optional[str] = None) -> str:
        """Return the id for a position, minting one if the slot does not match"""

        while len(self._slots) <= position:
            self._slots.append(None)

        slot = self._slots[position]
        if slot is not None and slot.kind == kind and (kind == "model" or slot.text == text):
            return slot.id

        slot = IdSlot(kind=kind, id=uuid.uuid4().hex, text=text if kind == "user" else None)
        self._slots[position] = slot
        return slot.id

    def truncate(self, length: int):
        del self._slots[length:]

    def clear(self):
        self._slots = []

    def ids(self) -> Set[str]:
        return {slot.id for slot in self._slots if slot is not None}

    def snapshot(self) -> List[Optional[IdSlot]]:
        return [slot.model_copy() if slot is not None else None for slot in self._slots]

    def restore(self, slots: Sequence[Optional[IdSlot]]):
        self._slots = [slot.model_copy() if slot is not None else None for slot in slots]


class ChatProjector:
    """Derives the renderer-facing chat from the canonical history"""

    def __init__(self, arena: Optional[IdArena] = None, accountant: Optional[TokenAccountant] = None):
        self.arena = arena or IdArena()
        self.accountant = accountant or TokenAccountant()

    def project(
        self,
        history: Sequence[CanonicalHistoryItem],
        in_flight: Optional[Sequence[ResponseBlock]] = None,
        live_user_text: Optional[str] = None,
        generating: bool = False
    ) -> List[SimplifiedChatItem]:
        """Project canonical history plus any in-flight generation.

        System items are skipped. Model responses are replayed through the
        stream reconciler so stored history renders the way it streamed.
        While generating, a synthetic user item (when `live_user_text` is
        given) and a synthetic model item (when blocks have arrived) trail the
        projection; neither is written to the canonical history.
        """

        items: List[SimplifiedChatItem] = []
        turn = None

        for position, item in enumerate(history):
            if isinstance(item, UserHistoryItem):
                turn = self.accountant.lookup(position, item.text)
                items.append(SimplifiedUserItem(
                    id=self.arena.resolve(position, "user", item.text),
                    message=item.text,
                    token_stats=turn.token_stats if turn else None
                ))
            elif isinstance(item, ModelHistoryItem):
                items.append(SimplifiedModelItem(
                    id=self.arena.resolve(position, "model"),
                    message=fold_all(response_to_fragments(item.response)),
                    token_stats=turn.token_stats if turn else None,
                    performance_stats=turn.performance_stats if turn else None
                ))

        if generating:
            position = len(history)
            if live_user_text is not None:
                items.append(SimplifiedUserItem(
                    id=self.arena.resolve(position, "user", live_user_text),
                    message=live_user_text
                ))
                position += 1

            if in_flight:
                items.append(SimplifiedModelItem(
                    id=self.arena.resolve(position, "model"),
                    message=list(in_flight)
                ))

        return items

    def truncate(self, length: int):
        """Forget ids and stats for canonical positions at or after `length`"""

        self.arena.truncate(length)
        self.accountant.truncate(length)

    def clear(self):
        self.arena.clear()
        self.accountant.clear()
