"""KFP v2 component — Evaluate similarity-search quality."""

from kfp import dsl


@dsl.component(
    base_image="python:3.11-slim",
    packages_to_install=["kb-indexer"],
)
def evaluate_search(
    eval_queries_path: str,
    database_url: str,
    vector_backend: str = "sql",
    chroma_host: str = "chroma.kubeflow.svc.cluster.local",
    chroma_port: int = 8000,
    collection_name: str = "kb_vectors",
    k: int = 5,
) -> float:
    """Run a simple hit-rate evaluation over a set of test queries.

    Parameters
    ----------
    eval_queries_path:
        Path to a JSON file with ``[{"query": "...", "expected_source_id": 42}]``.
    database_url:
        SQLAlchemy URL of the indexer database.
    vector_backend / chroma_host / chroma_port / collection_name:
        Vector-store selection and Chroma connection parameters.
    k:
        Number of results retrieved per query.

    Returns
    -------
    float
        Hit rate ∈ [0, 1].
    """
    import json

    from kb_indexer.config import Settings
    from kb_indexer.services import build_services

    with open(eval_queries_path) as f:
        eval_set = json.load(f)

    settings = Settings(
        database_url=database_url,
        vector_backend=vector_backend,
        chroma_host=chroma_host,
        chroma_port=chroma_port,
        chroma_collection=collection_name,
    )
    search = build_services(settings, create_schema=False).search

    hits = 0
    for item in eval_set:
        results = search.search(item["query"], top_k=k)
        sources = [r.citation.source_id for r in results]
        if item["expected_source_id"] in sources:
            hits += 1

    hit_rate = hits / len(eval_set) if eval_set else 0.0
    print(f"Hit rate: {hit_rate:.2%} ({hits}/{len(eval_set)})")
    return hit_rate
