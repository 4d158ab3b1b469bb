"""
loadlens - HTTP API load testing engine with request chains.

Flat (N users x M iterations) and phased (warmup, ramp-up, sustain, ramp-down)
runs over async HTTP/2, per-phase request timing, percentiles, time series,
cache and bottleneck analysis, assertions, and dependent request chains.
"""

from .exceptions import (
    AssertionEvaluationError,
    ChainError,
    ConfigurationError,
    LoadLensError,
    RunnerError,
)

__all__ = [
    "__version__",
    "AssertionEvaluationError",
    "ChainError",
    "ConfigurationError",
    "LoadLensError",
    "RunnerError",
]

__version__ = "1.0.0"
