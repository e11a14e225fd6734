"""Chat transport over the Telegram Bot API.

Inbound: ``parse_telegram_update`` turns a pushed Update into an
``InboundMessage``. Outbound: ``TelegramTransport`` sends text, URL-button
choices and deletes provisional messages. All outbound text uses one markup
dialect (``parse_mode``); a send rejected for bad markup is retried once as
plain text.
"""

import logging
from dataclasses import dataclass
from typing import Any

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction
from telegram.error import BadRequest, TelegramError

logger = logging.getLogger(__name__)

TELEGRAM = "telegram"


@dataclass(frozen=True)
class InboundMessage:
    """One inbound chat message.

    Attributes:
        platform_name: Chat platform ("telegram")
        platform_identity: The platform's conversation identifier
        text: Message text
        display_name: Sender's first name, if known
    """

    platform_name: str
    platform_identity: str
    text: str
    display_name: str | None = None


@dataclass(frozen=True)
class ChoiceLink:
    """A labelled redirect link shown as a button."""

    label: str
    url: str


class ChatTransport:
    """Outbound chat operations used by the message router."""

    async def send_text(self, identity: str, text: str) -> int | None:
        raise NotImplementedError

    async def send_choice_links(
        self, identity: str, text: str, links: list[ChoiceLink]
    ) -> int | None:
        raise NotImplementedError

    async def delete_message(self, identity: str, message_ref: int) -> None:
        raise NotImplementedError

    async def send_typing(self, identity: str) -> None:
        raise NotImplementedError


class TelegramTransport(ChatTransport):
    """Telegram implementation of ``ChatTransport``.

    Attributes:
        bot: python-telegram-bot ``Bot`` instance
        parse_mode: Markup dialect for all outbound text
    """

    def __init__(self, bot: Bot, parse_mode: str = "Markdown") -> None:
        self.bot = bot
        self.parse_mode = parse_mode

    async def _send(self, identity: str, text: str, **kwargs: Any) -> int:
        try:
            message = await self.bot.send_message(
                chat_id=identity, text=text, parse_mode=self.parse_mode, **kwargs
            )
        except BadRequest as e:
            if "parse entities" not in str(e).lower():
                raise
            logger.warning(f"Markup rejected, resending as plain text: {e}")
            message = await self.bot.send_message(chat_id=identity, text=text, **kwargs)
        return message.message_id

    async def send_text(self, identity: str, text: str) -> int:
        return await self._send(identity, text)

    async def send_choice_links(self, identity: str, text: str, links: list[ChoiceLink]) -> int:
        keyboard = InlineKeyboardMarkup(
            [[InlineKeyboardButton(link.label, url=link.url)] for link in links]
        )
        return await self._send(identity, text, reply_markup=keyboard)

    async def delete_message(self, identity: str, message_ref: int) -> None:
        await self.bot.delete_message(chat_id=identity, message_id=message_ref)

    async def send_typing(self, identity: str) -> None:
        try:
            await self.bot.send_chat_action(chat_id=identity, action=ChatAction.TYPING)
        except TelegramError as e:
            logger.debug(f"Typing indicator failed: {e}")


def parse_telegram_update(payload: dict[str, Any], bot: Bot | None = None) -> InboundMessage | None:
    """Convert a Telegram webhook payload into an ``InboundMessage``.

    Returns:
        None for updates without text (stickers, edits, joins, ...)
    """
    update = Update.de_json(payload, bot)
    if update is None:
        return None
    message = update.message
    if message is None or not message.text:
        return None
    user = message.from_user
    return InboundMessage(
        platform_name=TELEGRAM,
        platform_identity=str(message.chat.id),
        text=message.text,
        display_name=user.first_name if user else None,
    )
