"""
External Adapters
Conversation source and classifier implementations.
"""
from .graph_client import GraphClient
from .openai_classifier import OpenAIClassifier

__all__ = [
    "GraphClient",
    "OpenAIClassifier",
]
