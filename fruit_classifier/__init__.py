"""
Transfer-learning fruit image classifier trained from labeled folder trees.
"""

__all__ = [
    "benchmark",
    "config",
    "data",
    "errors",
    "evaluate",
    "infer",
    "model",
    "persistence",
    "pipeline",
    "train",
    "utils",
]
