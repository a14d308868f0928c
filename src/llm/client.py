"""
Chat client for OpenAI-compatible APIs (OpenAI, Z.AI/GLM, DeepSeek, etc.).

Acts as the downstream generator for answers and as the text source for
query expansion. Also hosts the rate-limit classification shared with the
embedding layer.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import random
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Mapping, Optional, Sequence

from dotenv import load_dotenv
from openai import APIStatusError, AsyncOpenAI, RateLimitError

# Load .env file if it exists
project_root = Path(__file__).resolve().parents[2]
env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)


LLM_BASE_URL = os.getenv("LLM_BASE_URL")
LLM_API_KEY = os.getenv("LLM_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"

CHARS_PER_TOKEN = 4

_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate_limit", "quota", "concurrency", "1302")

logger = logging.getLogger(__name__)


def is_rate_limit_error(exc: BaseException) -> bool:
    """True when the error means "slow down" rather than "broken"."""
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, APIStatusError) and exc.status_code == 429:
        return True
    error_str = str(exc).lower()
    return any(marker in error_str for marker in _RATE_LIMIT_MARKERS)


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 chars per token for English), rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _resolve_client_params(
    model_name: Optional[str] = None,
    api_token: Optional[str] = None,
    base_url: Optional[str] = None,
) -> tuple[str, str, str]:
    """Resolve model, api_key, base_url from args or env (custom endpoint when set, else OpenAI)."""
    use_custom = (LLM_BASE_URL and LLM_API_KEY) or (base_url and api_token)
    if use_custom:
        base = base_url or LLM_BASE_URL or ""
        key = api_token or LLM_API_KEY or ""
        model = model_name or LLM_MODEL
        if base and key:
            return model, key, base
    key = api_token or os.getenv("OPENAI_API_KEY")
    base = base_url or os.getenv("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL)
    model = model_name or LLM_MODEL
    return model, key or "", base


@dataclass
class Generation:
    """Generator output: text plus the token count it consumed."""

    content: str
    token_count: int


def build_prompt(messages: Sequence[Mapping[str, str]], context: str = "") -> str:
    """Flatten chat messages into one prompt, prefixed with retrieved context."""
    prompt = ""
    if context:
        prompt = f"Context information:\n{context}\n\n"
        prompt += (
            "Based on the above context, answer the following conversation. "
            "If the context doesn't contain relevant information, use your general "
            "knowledge but be honest about the limitations.\n\n"
        )
    for msg in messages:
        role = msg.get("role", "user")
        text = msg.get("content", "")
        if role == "assistant":
            prompt += f"Assistant: {text}\n"
        elif role == "system":
            prompt += f"System: {text}\n"
        else:
            prompt += f"User: {text}\n"
    return prompt


class ChatClient:
    """OpenAI-compatible async chat client."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model_name, api_key, self.base_url = _resolve_client_params(
            model_name=model_name, api_token=api_token, base_url=base_url
        )
        if client is not None:
            self.client = client
            return
        if not api_key:
            raise ValueError(
                "API key required. Set LLM_API_KEY (custom endpoint) or OPENAI_API_KEY."
            )
        self.client = AsyncOpenAI(base_url=self.base_url, api_key=api_key)

    def _create_kwargs(self, prompt: str, max_tokens: int, temperature: float) -> dict:
        create_kw: dict = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        # Z.AI: disable thinking so the model returns directly in content
        if "z.ai" in self.base_url.lower():
            create_kw["extra_body"] = {"thinking": {"type": "disabled"}}
        return create_kw

    async def generate(
        self,
        messages: Sequence[Mapping[str, str]],
        context: str = "",
        *,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        max_retries: int = 3,
    ) -> Generation:
        """Generate a reply to the conversation, grounded on the given context."""
        prompt = build_prompt(messages, context)
        create_kw = self._create_kwargs(prompt, max_tokens, temperature)

        retry_count = 0
        while True:
            try:
                response = await self.client.chat.completions.create(**create_kw)
                break
            except Exception as e:
                if not is_rate_limit_error(e):
                    logger.error("Error calling API: %s", e)
                    raise
                retry_count += 1
                if retry_count >= max_retries:
                    logger.warning("Rate limit exceeded after %s retries.", max_retries)
                    raise
                # Exponential backoff with jitter for concurrency limits
                backoff = (2 ** retry_count) + random.uniform(0, 1.0)
                logger.warning(
                    "Rate limit hit (429/concurrency). Retrying in %s s (attempt %s/%s)",
                    round(backoff, 1),
                    retry_count,
                    max_retries,
                )
                await asyncio.sleep(backoff)

        content = ""
        if response.choices:
            msg = response.choices[0].message
            content = (msg.content or "").strip()
            # Z.AI may put output in reasoning_content when thinking is enabled
            if not content and getattr(msg, "reasoning_content", None):
                content = (msg.reasoning_content or "").strip()
        if not content:
            logger.warning("Empty content in response from %s", self.model_name)

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", None) if usage is not None else None
        if not tokens:
            tokens = estimate_tokens(prompt + content)
        return Generation(content=content, token_count=int(tokens))

    async def generate_single(
        self,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.7,
    ) -> str:
        """Generate text for a single user prompt with no retrieved context."""
        result = await self.generate(
            [{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return result.content

    async def stream(
        self,
        messages: Sequence[Mapping[str, str]],
        context: str = "",
        *,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Stream text pieces as the provider emits them."""
        prompt = build_prompt(messages, context)
        stream_kw = self._create_kwargs(prompt, max_tokens, temperature)
        stream_kw["stream"] = True
        response = await self.client.chat.completions.create(**stream_kw)
        async for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content


def create_client(
    model_name: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> ChatClient:
    """Create an OpenAI-compatible chat client from args or environment."""
    return ChatClient(model_name=model_name, api_token=api_key, base_url=base_url)


__all__: List[str] = [
    "ChatClient",
    "Generation",
    "build_prompt",
    "create_client",
    "estimate_tokens",
    "is_rate_limit_error",
]
