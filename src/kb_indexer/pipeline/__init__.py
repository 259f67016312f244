"""
Pipeline — the resumable four-stage indexing sweep.

    document_build → chunk_build → embed_chunks → index_upsert

Each stage handles one bounded batch per invocation and re-enqueues
itself (or the next stage) through a :class:`JobScheduler`.
"""

from kb_indexer.pipeline.base import (
    CHUNK_BUILD,
    DOCUMENT_BUILD,
    EMBED_CHUNKS,
    INDEX_UPSERT,
    PIPELINE_STAGES,
    PipelineContext,
    Stage,
)
from kb_indexer.pipeline.chunk_build import ChunkBuildStage
from kb_indexer.pipeline.cleanup import CleanupReport, KBStats, KnowledgeBaseCleanup
from kb_indexer.pipeline.document_build import DocumentBuildStage
from kb_indexer.pipeline.embed_chunks import EmbedChunksStage
from kb_indexer.pipeline.index_upsert import IndexUpsertStage
from kb_indexer.pipeline.manager import PipelineManager, PipelineState, PipelineStatus, build_pipeline
from kb_indexer.pipeline.scheduler import InMemoryScheduler, JobScheduler, ScheduledJob
from kb_indexer.pipeline.state import (
    BatchState,
    BatchStateStore,
    InMemoryBatchStateStore,
    SqlBatchStateStore,
    StageOutcome,
    StageStatus,
)

__all__ = [
    "CHUNK_BUILD",
    "DOCUMENT_BUILD",
    "EMBED_CHUNKS",
    "INDEX_UPSERT",
    "PIPELINE_STAGES",
    "BatchState",
    "BatchStateStore",
    "ChunkBuildStage",
    "CleanupReport",
    "DocumentBuildStage",
    "EmbedChunksStage",
    "InMemoryBatchStateStore",
    "InMemoryScheduler",
    "IndexUpsertStage",
    "JobScheduler",
    "KBStats",
    "KnowledgeBaseCleanup",
    "PipelineContext",
    "PipelineManager",
    "PipelineState",
    "PipelineStatus",
    "ScheduledJob",
    "SqlBatchStateStore",
    "Stage",
    "StageOutcome",
    "StageStatus",
    "build_pipeline",
]
