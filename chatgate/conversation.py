"""Conversation engine.

Builds persona + recent history + new message into one completion request,
dispatches it, and persists the exchange.
"""

import logging

from chatgate.completion import CompletionClient
from chatgate.exceptions import StoreError
from chatgate.models import Account, TurnRole
from chatgate.persona import FALLBACK_REPLY
from chatgate.store import AccountStore

logger = logging.getLogger(__name__)


class ConversationEngine:
    """Answers one user message in the context of its link's history.

    Attributes:
        store: Account store (history reads and writes)
        completion: Completion API client
        persona: System instruction sent first on every request
        history_limit: Number of prior turns included
    """

    def __init__(
        self,
        store: AccountStore,
        completion: CompletionClient,
        persona: str,
        history_limit: int = 5,
    ) -> None:
        self.store = store
        self.completion = completion
        self.persona = persona
        self.history_limit = history_limit

    async def build_messages(self, link_id: str, user_text: str) -> list[dict[str, str]]:
        """Return the ordered prompt: persona, history oldest-first, new turn."""
        history = await self.store.recent_history(link_id, self.history_limit)
        messages = [{"role": "system", "content": self.persona}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in history)
        messages.append({"role": "user", "content": user_text})
        return messages

    async def answer(self, account: Account, link_id: str, user_text: str) -> str:
        """Answer ``user_text`` and record the exchange.

        Raises:
            StoreError: If history could not be read
            CompletionError: If the completion call failed or timed out
        """
        messages = await self.build_messages(link_id, user_text)
        reply = await self.completion.complete(messages)
        if reply is None:
            logger.warning("Completion returned no content", extra={"account_id": account.account_id})
            return FALLBACK_REPLY

        try:
            await self.store.record_turn(link_id, TurnRole.USER, user_text)
            await self.store.record_turn(link_id, TurnRole.ASSISTANT, reply)
        except StoreError as e:
            # The user still gets the answer; only history is lost.
            logger.error(f"Failed to persist exchange: {e}", extra={"account_id": account.account_id})

        return reply
