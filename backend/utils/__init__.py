# backend/utils/__init__.py
"""
Utility modules for TrafficLens backend.
"""

from .cancellation import (
    CancellationToken,
    run_cancellable,
)

from .json_scanner import (
    extract_json_block,
    find_json_block_span,
)

__all__ = [
    # Cancellation
    "CancellationToken",
    "run_cancellable",
    # Model output parsing
    "extract_json_block",
    "find_json_block_span",
]
