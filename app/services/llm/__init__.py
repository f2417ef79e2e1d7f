from app.services.llm.base import LLMProvider, LLMProviderError, LLMResponse, image_part, text_part
from app.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMProviderError", "LLMResponse", "OpenAIProvider", "image_part", "text_part"]
