"""
errors.py - Error taxonomy for FDE encoding, quantization and retrieval.

=============================================================================
OVERVIEW
=============================================================================

Everything here is raised synchronously to the immediate caller. The core
performs no I/O, so nothing is retried: a failure means the caller passed
bad configuration, bad input, or called things in the wrong order.

    MVRError
    ├── ConfigurationError       (also a ValueError)
    ├── UninitializedStateError  (also a RuntimeError)
    └── EmptyInputError          (also a ValueError)

    ApproximationQualityWarning  (a UserWarning, never raised)

The exceptions also subclass the matching builtin so code that already
catches ValueError / RuntimeError keeps working.

=============================================================================
"""

from __future__ import annotations


class MVRError(Exception):
    """Base class for every error raised by the mvr package."""


class ConfigurationError(MVRError, ValueError):
    """
    Invalid or inconsistent configuration.

    Examples:
        - token dimension does not match EncodingConfig.dimension
        - projection_type=AMS_SKETCH without a projection_dimension
        - two FDEs of different length passed to similarity()
    """


class UninitializedStateError(MVRError, RuntimeError):
    """
    A component was used before it was ready.

    Examples:
        - ProductQuantizer.encode() before train()
        - MIPSRetriever.search() before add_documents()
    """


class EmptyInputError(MVRError, ValueError):
    """A multi-vector with zero tokens was passed where one is required."""


class ApproximationQualityWarning(UserWarning):
    """
    Search returned fewer results than requested.

    Emitted with warnings.warn(); the partial results are still returned.
    Happens when similarity pruning drops rows, or when the neighbor graph
    cannot reach enough documents from its entry point.
    """
