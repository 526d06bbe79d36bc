from typing import Dict, List, Optional, Sequence
from datetime import datetime, timezone
import asyncio
import uuid

from session_orchestrator.domain.models.chat_state import (
    CanonicalHistoryItem, SavedChat, UserHistoryItem
)


def generate_chat_title(messages: Sequence[CanonicalHistoryItem]) -> str:
    """Title a chat after its first user message"""

    for message in messages:
        if isinstance(message, UserHistoryItem) and message.text:
            title = message.text.strip()
            return title[:47] + "..." if len(title) > 50 else title
    return "New Chat"


class ChatStore:
    """Manages saved chats for the running process"""

    def __init__(self):
        self.chats: Dict[str, SavedChat] = {}
        self._lock = asyncio.Lock()

    async def save_chat(
        self,
        title: str,
        messages: Sequence[CanonicalHistoryItem],
        model: Optional[str] = None,
        chat_id: Optional[str] = None
    ) -> SavedChat:
        """Create a chat, or update it in place keeping its creation time"""

        async with self._lock:
            now = datetime.now(timezone.utc).isoformat()
            chat_id = chat_id or uuid.uuid4().hex
            existing = self.chats.get(chat_id)

            chat = SavedChat(
                id=chat_id,
                title=title,
                messages=[message.model_copy(deep=True) for message in messages],
                model=model,
                created_at=existing.created_at if existing else now,
                updated_at=now
            )
            self.chats[chat_id] = chat
            return chat.model_copy(deep=True)

    async def get_chat_by_id(self, chat_id: str) -> Optional[SavedChat]:
        async with self._lock:
            chat = self.chats.get(chat_id)
            return chat.model_copy(deep=True) if chat else None

    async def get_all_chats(self) -> List[SavedChat]:
        """All saved chats, most recently updated first"""

        async with self._lock:
            chats = sorted(self.chats.values(), key=lambda chat: chat.updated_at, reverse=True)
            return [chat.model_copy(deep=True) for chat in chats]

    async def delete_chat(self, chat_id: str) -> bool:
        async with self._lock:
            return self.chats.pop(chat_id, None) is not None

    async def update_chat_title(self, chat_id: str, title: str) -> bool:
        async with self._lock:
            chat = self.chats.get(chat_id)
            if chat is None:
                return False

            self.chats[chat_id] = chat.model_copy(update={
                "title": title,
                "updated_at": datetime.now(timezone.utc).isoformat()
            })
            return True
