from .provider import LLMProvider, ModelDelta
from .openai_provider import OpenAIChatCompletionsProvider

__all__ = ["LLMProvider", "ModelDelta", "OpenAIChatCompletionsProvider"]
