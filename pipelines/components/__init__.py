"""KFP v2 components — each file exports one @dsl.component."""

from pipelines.components.evaluate import evaluate_search
from pipelines.components.sweep import run_kb_sweep

__all__ = [
    "evaluate_search",
    "run_kb_sweep",
]
