from tistis_messaging.services.llm.base import LLMError, LLMProvider, LLMResponse
from tistis_messaging.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
