"""Ingestion pipeline components."""

from .parser import MessageParser
from .pipeline import IngestionPipeline, MessageParserProtocol

__all__ = [
    "IngestionPipeline",
    "MessageParser",
    "MessageParserProtocol",
]
