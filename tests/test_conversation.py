"""Tests for ConversationEngine."""

from unittest.mock import patch

import pytest

from chatgate.exceptions import CompletionError, StoreError
from chatgate.persona import FALLBACK_REPLY

PERSONA = "You are a test counselor."


async def _exchange(store, link_id: str, user_text: str, assistant_text: str) -> None:
    await store.record_turn(link_id, "user", user_text)
    await store.record_turn(link_id, "assistant", assistant_text)


class TestBuildMessages:
    """Tests for prompt assembly."""

    @pytest.mark.asyncio
    async def test_persona_first_then_new_turn(self, engine, store):
        """With no history the prompt is persona + user message."""
        _, link = await store.resolve_or_create_link("telegram", "1")

        messages = await engine.build_messages(link.link_id, "Tell me about grace.")

        assert messages == [
            {"role": "system", "content": PERSONA},
            {"role": "user", "content": "Tell me about grace."},
        ]

    @pytest.mark.asyncio
    async def test_history_between_persona_and_new_turn(self, engine, store):
        """History appears oldest first, capped at five turns."""
        _, link = await store.resolve_or_create_link("telegram", "1")
        for i in range(3):
            await _exchange(store, link.link_id, f"q{i}", f"a{i}")

        messages = await engine.build_messages(link.link_id, "next")

        assert messages[0]["role"] == "system"
        assert [m["content"] for m in messages[1:-1]] == ["a0", "q1", "a1", "q2", "a2"]
        assert messages[-1] == {"role": "user", "content": "next"}


class TestAnswer:
    """Tests for answer()."""

    @pytest.mark.asyncio
    async def test_answer_records_exchange(self, engine, store, completion):
        """A successful answer persists user then assistant turn."""
        account, link = await store.resolve_or_create_link("telegram", "1")

        reply = await engine.answer(account, link.link_id, "Tell me about grace.")

        assert reply == completion.reply
        assert len(completion.calls) == 1
        turns = await store.recent_history(link.link_id, 5)
        assert [(t.role, t.content) for t in turns] == [
            ("user", "Tell me about grace."),
            ("assistant", completion.reply),
        ]

    @pytest.mark.asyncio
    async def test_empty_completion_returns_fallback(self, engine, store, completion):
        """No content -> fixed fallback text, nothing recorded."""
        completion.reply = None
        account, link = await store.resolve_or_create_link("telegram", "1")

        reply = await engine.answer(account, link.link_id, "hello")

        assert reply == FALLBACK_REPLY
        assert await store.recent_history(link.link_id, 5) == []

    @pytest.mark.asyncio
    async def test_completion_failure_propagates(self, engine, store, completion):
        """A failed completion raises and records nothing."""
        completion.error = CompletionError("upstream 500")
        account, link = await store.resolve_or_create_link("telegram", "1")

        with pytest.raises(CompletionError):
            await engine.answer(account, link.link_id, "hello")

        assert await store.recent_history(link.link_id, 5) == []

    @pytest.mark.asyncio
    async def test_persistence_failure_still_answers(self, engine, store, completion):
        """Failing to save history never hides the answer from the user."""
        account, link = await store.resolve_or_create_link("telegram", "1")

        with patch.object(store, "record_turn", side_effect=StoreError("disk full")):
            reply = await engine.answer(account, link.link_id, "hello")

        assert reply == completion.reply
