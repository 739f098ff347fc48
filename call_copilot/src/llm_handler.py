"""
Amazon Bedrock handler.
Requests reply candidates for the customer persona from the Converse API.
"""

import asyncio
import logging
import time
from typing import Optional

import aiohttp

from .config import BedrockConfig
from .conversation import ConversationHistory, build_prompt

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """The completion call failed or returned nothing usable."""


class LLMHandler:
    """Single-shot completions over the Bedrock Converse API."""

    def __init__(self, config: BedrockConfig):
        self.config = config
        self.api_key = config.api_key
        self.region = config.region
        self.model_id = config.model_id

        self._base_url = f"https://bedrock-runtime.{self.region}.amazonaws.com/model/{self.model_id}"

    def _build_payload(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> dict:
        tokens = max_tokens if max_tokens is not None else self.config.max_tokens
        temp = temperature if temperature is not None else self.config.temperature
        return {
            "messages": [{"role": "user", "content": [{"text": prompt}]}],
            "inferenceConfig": {"maxTokens": tokens, "temperature": temp},
        }

    @staticmethod
    def _extract_text(result: dict) -> str:
        """Pull the completion text out of a Converse response body."""
        content = result.get("output", {}).get("message", {}).get("content", [])
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))

    async def complete(self, prompt: str, **kwargs) -> str:
        """
        Return the model's completion for ``prompt``.

        Raises:
            LLMError: On HTTP/network failure or an empty completion
        """
        start_time = time.time()
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        payload = self._build_payload(prompt, **kwargs)

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self._base_url}/converse",
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"Bedrock API error {response.status}: {error_text}")
                        raise LLMError(f"Bedrock returned HTTP {response.status}")
                    result = await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Bedrock request error: {e}")
            raise LLMError(str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error("Bedrock request timed out")
            raise LLMError("Bedrock request timed out") from e

        text = self._extract_text(result).strip()
        if not text:
            raise LLMError("Bedrock returned an empty completion")

        logger.info(f"Completion ({(time.time() - start_time) * 1000:.0f}ms): {text[:100]}")
        return text

    async def suggest_replies(self, history: ConversationHistory, utterance: str) -> str:
        """Ask for the persona's next lines given the transcript so far."""
        return await self.complete(build_prompt(history, utterance))
