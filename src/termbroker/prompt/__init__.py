"""Prompt detection for the agent's terminal output."""

from termbroker.prompt.classifier import OutputClassifier, classify, get_input_for_option
from termbroker.prompt.models import ParsedPrompt, PromptOption, PromptType

__all__ = [
    "OutputClassifier",
    "ParsedPrompt",
    "PromptOption",
    "PromptType",
    "classify",
    "get_input_for_option",
]
