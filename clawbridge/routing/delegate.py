"""
Conversation-side interface the routing bridge drives.

The host (a chat UI, a CLI session, a test double) implements BridgeDelegate
so the bridge can ask which conversation is active, whether it is busy or
waiting on a question, and hand it inbound channel messages.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class BridgeDelegate(ABC):
    """Abstract host conversation interface."""

    @abstractmethod
    def get_active_conversation_id(self) -> Optional[str]:
        """The conversation inbound messages are routed to, or None."""

    @abstractmethod
    def is_running(self, conversation_id: str) -> bool:
        """Whether the agent is currently generating a response."""

    @abstractmethod
    def has_pending_question(self, conversation_id: str) -> bool:
        """Whether the agent is blocked waiting for the user to answer a question."""

    @abstractmethod
    def get_pending_question_id(self, conversation_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def answer_pending_question(self, conversation_id: str, question_id: str, answer: str) -> None:
        ...

    @abstractmethod
    def cancel_request(self, conversation_id: str) -> None:
        ...

    @abstractmethod
    def inject_channel_message(
        self,
        conversation_id: str,
        channel_name: str,
        content: str,
        sender: Optional[str] = None,
    ) -> None:
        """Start a new request in the conversation from an inbound channel message."""
