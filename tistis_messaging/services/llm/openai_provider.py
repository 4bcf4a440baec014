from typing import List, Optional

import httpx

from tistis_messaging.logging_config import get_logger
from tistis_messaging.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over plain HTTP."""

    def __init__(self, api_key: str, default_model: str = "gpt-5-mini"):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.openai.com/v1/chat/completions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise LLMError(f"OpenAI API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMError(f"OpenAI returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise LLMError("OpenAI returned an unexpected payload")

        content = ""
        choices = data.get("choices")
        if choices:
            choice = choices[0] if isinstance(choices, list) else None
            message = choice.get("message") if isinstance(choice, dict) else None
            if not isinstance(message, dict):
                raise LLMError("OpenAI returned a malformed choice")
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
