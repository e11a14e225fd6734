"""Completion API client.

Wraps the OpenAI async client (or any OpenAI-compatible gateway) behind a
single ``complete`` call with a bounded timeout.
"""

import logging

import openai
from openai import AsyncOpenAI

from chatgate.exceptions import CompletionError

logger = logging.getLogger(__name__)


class CompletionClient:
    """Client for an OpenAI-compatible chat completions endpoint.

    Attributes:
        client: AsyncOpenAI client
        model: Model to use
        max_tokens: Maximum tokens per response
        temperature: Sampling temperature
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float,
        timeout_seconds: float = 30.0,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
        )
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

        logger.info(f"Completion client initialized: model={self.model}")

    async def complete(self, messages: list[dict[str, str]]) -> str | None:
        """Run one completion round trip.

        Args:
            messages: Conversation in OpenAI format
                     [{"role": "system", "content": "..."}, ...]

        Returns:
            The response text, or None if the model returned no content

        Raises:
            CompletionError: If the request fails or times out

        Example:
            >>> text = await client.complete([{"role": "user", "content": "Hello"}])
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except openai.APITimeoutError as e:
            logger.error("Completion request timed out")
            raise CompletionError("Completion request timed out", timed_out=True) from e
        except openai.OpenAIError as e:
            logger.error(f"Completion request failed: {e}")
            raise CompletionError(f"Completion request failed: {e}") from e

        if not response.choices:
            return None
        content = response.choices[0].message.content

        if response.usage:
            logger.info(
                f"Completion response: model={response.model}, "
                f"tokens={response.usage.total_tokens}"
            )
        return content or None
