from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class LLMError(Exception):
    """The provider could not produce a completion."""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None

    # Some providers only report a total; it is split 70/30 between input and output.
    @property
    def prompt_tokens(self) -> int:
        usage = self.usage or {}
        if usage.get("prompt_tokens") is None and usage.get("total_tokens"):
            return round(int(usage["total_tokens"]) * 0.7)
        return int(usage.get("prompt_tokens") or 0)

    @property
    def completion_tokens(self) -> int:
        usage = self.usage or {}
        if usage.get("completion_tokens") is None and usage.get("total_tokens"):
            return int(usage["total_tokens"]) - self.prompt_tokens
        return int(usage.get("completion_tokens") or 0)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass
