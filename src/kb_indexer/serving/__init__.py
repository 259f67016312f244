"""
Serving — FastAPI application for search and pipeline control.

Run with ``uvicorn kb_indexer.serving.app:app``.
"""
