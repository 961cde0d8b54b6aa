# src/deconv_benchmark/errors.py
"""
Exception types shared by the S1/S2/S3 stages.

Fatal errors (simulation invariants, missing reference cells, malformed input)
propagate up to the CLI. `MethodError` is raised by a single deconvolution
method and is caught by the S2 adapter loop, which records it and moves on.
"""

from __future__ import annotations


class BenchmarkError(Exception):
    """Base class for all benchmark errors."""


class FractionSumError(BenchmarkError, ValueError):
    """A simulated fraction vector is negative or does not sum to 1."""


class MissingReferenceCellsError(BenchmarkError, ValueError):
    """A requested cell type has no cells in the single-cell reference."""


class InputFormatError(BenchmarkError, ValueError):
    """An input table or reference object is malformed."""


class MethodError(BenchmarkError, RuntimeError):
    """A deconvolution method failed for one run."""

    def __init__(self, method: str, message: str):
        super().__init__(f"[{method}] {message}")
        self.method = method


class UnknownMethodError(BenchmarkError, KeyError):
    """Requested method name is not in the registry."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown method"


__all__ = [
    "BenchmarkError",
    "FractionSumError",
    "MissingReferenceCellsError",
    "InputFormatError",
    "MethodError",
    "UnknownMethodError",
]
