"""Durable document persistence for engine state."""

from docflow.persistence.store import (
    Document,
    DocumentFactory,
    DocumentValidator,
    JsonDocumentStore,
    StoreCorruption,
)

__all__ = [
    "Document",
    "DocumentFactory",
    "DocumentValidator",
    "JsonDocumentStore",
    "StoreCorruption",
]
