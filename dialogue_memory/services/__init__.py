from .gemini_client import GeminiProvider
from .ollama_client import OllamaProvider

__all__ = ["GeminiProvider", "OllamaProvider"]
