"""
Storage — relational persistence for documents, chunks, vectors and batch state.

Works against any SQLAlchemy-supported database (MySQL, PostgreSQL, SQLite).
"""

from kb_indexer.storage.database import (
    create_db_engine,
    create_session_factory,
    init_schema,
)
from kb_indexer.storage.models import (
    BatchStateModel,
    Base,
    ChunkModel,
    DocumentModel,
    DocumentStatus,
    VectorModel,
)
from kb_indexer.storage.repositories import ChunkRepository, DocumentRepository

__all__ = [
    "Base",
    "BatchStateModel",
    "ChunkModel",
    "ChunkRepository",
    "DocumentModel",
    "DocumentRepository",
    "DocumentStatus",
    "VectorModel",
    "create_db_engine",
    "create_session_factory",
    "init_schema",
]
