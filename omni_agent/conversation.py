"""会话模块：保存用户与 Agent 的对话历史"""

import uuid
from typing import Any, Dict, List, Optional

from .models import Message, Role

DEFAULT_TITLE = "New Conversation"


def _new_id() -> str:
    return uuid.uuid4().hex[:9]


class Conversation:
    """单个会话：id、标题、有序消息列表"""

    def __init__(self, conversation_id: Optional[str] = None, title: str = DEFAULT_TITLE,
                 messages: Optional[List[Message]] = None):
        self.id = conversation_id or _new_id()
        self.title = title
        self._messages: List[Message] = list(messages or [])

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def append(self, role: Role, content: str) -> bool:
        """追加消息；与上一条角色和内容都相同时忽略，返回是否真正追加"""
        role = Role(role)
        last = self._messages[-1] if self._messages else None
        if last is not None and last.role == role and last.content == content:
            return False
        self._messages.append(Message(role=role, content=content))
        return True

    def assign_title(self, title: Optional[str]) -> bool:
        """仅在标题仍为默认值时由决策步骤自动命名一次"""
        if not title or self.title != DEFAULT_TITLE:
            return False
        self.title = title.strip()
        return True

    def rename(self, title: str):
        if title:
            self.title = title

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self._messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        messages = [
            Message(role=Role(item["role"]), content=item["content"])
            for item in data.get("messages", [])
        ]
        return cls(data.get("id"), data.get("title") or DEFAULT_TITLE, messages)

    def __len__(self) -> int:
        return len(self._messages)


class ConversationStore:
    """会话集合与当前激活会话。持久化由外部协作者负责"""

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self.active_id: Optional[str] = None

    @property
    def active(self) -> Conversation:
        if self.active_id is None or self.active_id not in self._conversations:
            return self.new()
        return self._conversations[self.active_id]

    def new(self) -> Conversation:
        conversation = Conversation()
        self._conversations[conversation.id] = conversation
        self.active_id = conversation.id
        return conversation

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def activate(self, conversation_id: str) -> Conversation:
        if conversation_id not in self._conversations:
            raise KeyError(conversation_id)
        self.active_id = conversation_id
        return self._conversations[conversation_id]

    def add(self, conversation: Conversation):
        self._conversations[conversation.id] = conversation

    def list(self) -> List[Conversation]:
        return list(self._conversations.values())
