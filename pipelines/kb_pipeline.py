"""KFP v2 pipeline — incremental knowledge-base indexing + evaluation.

    import source export → sweep (build → chunk → embed → upsert) → evaluate

Compile
-------
    python -m pipelines.kb_pipeline --compile
"""

from kfp import compiler, dsl

from pipelines.components.evaluate import evaluate_search
from pipelines.components.sweep import run_kb_sweep


@dsl.pipeline(
    name="kb-index-pipeline",
    description=(
        "Incrementally index a content export into the knowledge base and "
        "optionally evaluate search quality."
    ),
)
def kb_index_pipeline(
    # ── Source ──────────────────────────────────────────────────────
    source_uri: str = "gs://kb-exports/items.jsonl",
    content_types: str = '["post", "page"]',
    # ── Index ──────────────────────────────────────────────────────
    database_url: str = "postgresql+psycopg://kb:kb@kb-db.kubeflow.svc.cluster.local/kb",
    embedding_model: str = "openai/text-embedding-3-small",
    embedding_dimensions: int = 1536,
    vector_backend: str = "sql",
    chroma_host: str = "chroma.kubeflow.svc.cluster.local",
    chroma_port: int = 8000,
    collection_name: str = "kb_vectors",
    # ── Evaluation (optional) ──────────────────────────────────────
    run_evaluation: bool = False,
    eval_queries_path: str = "/data/eval_queries.json",
    retrieval_k: int = 5,
) -> None:
    """Import → sweep → (evaluate).

    Parameters
    ----------
    source_uri:
        URI of the JSON-Lines export of source items.
    content_types:
        JSON list of item types to index.
    database_url:
        SQLAlchemy URL of the indexer database.
    embedding_model / embedding_dimensions:
        Embedding model id and expected vector size.
    vector_backend / chroma_host / chroma_port / collection_name:
        Vector-store selection and Chroma connection details.
    run_evaluation:
        Run the hit-rate evaluation after the sweep.
    eval_queries_path / retrieval_k:
        Evaluation inputs.
    """
    source = dsl.importer(
        artifact_uri=source_uri,
        artifact_class=dsl.Dataset,
        reimport=True,
    )

    sweep_task = run_kb_sweep(
        source_items=source.output,
        database_url=database_url,
        content_types=content_types,
        embedding_model=embedding_model,
        embedding_dimensions=embedding_dimensions,
        vector_backend=vector_backend,
        chroma_host=chroma_host,
        chroma_port=chroma_port,
        collection_name=collection_name,
    )
    sweep_task.set_display_name("KB sweep")

    with dsl.If(run_evaluation == True):  # noqa: E712
        evaluate_search(
            eval_queries_path=eval_queries_path,
            database_url=database_url,
            vector_backend=vector_backend,
            chroma_host=chroma_host,
            chroma_port=chroma_port,
            collection_name=collection_name,
            k=retrieval_k,
        ).after(sweep_task)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="KB indexing pipeline")
    parser.add_argument("--compile", action="store_true", help="Compile pipeline to YAML")
    parser.add_argument(
        "--output",
        default="pipelines/compiled/kb_pipeline.yaml",
        help="Output path for compiled YAML",
    )
    args = parser.parse_args()

    if args.compile:
        compiler.Compiler().compile(kb_index_pipeline, args.output)
        print(f"Pipeline compiled → {args.output}")
