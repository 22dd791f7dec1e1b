"""Classification capabilities."""

from .classifier import KeywordClassifier, LlmClassifier
from .llm import LABEL_TOKEN_BUDGET, LLMClient, LLMError, OllamaClient, extract_label
from .prompts import build_classification_prompt

__all__ = [
    "LABEL_TOKEN_BUDGET",
    "KeywordClassifier",
    "LLMClient",
    "LLMError",
    "LlmClassifier",
    "OllamaClient",
    "build_classification_prompt",
    "extract_label",
]
