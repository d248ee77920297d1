"""
Exception types raised by the pipeline.

All errors derive from ValueError so callers that guard pipeline stages with
``except ValueError`` keep working. Per-gene model failures are never raised;
they are recorded on the fit result instead.
"""

from __future__ import annotations

__all__ = [
    'DgeflowError',
    'InputFormatError',
    'AnnotationError',
    'DesignError',
    'NormalizationError',
    'ConfigError',
    'DegenerateDataError',
]


class DgeflowError(ValueError):
    """Base class for all pipeline errors."""


class InputFormatError(DgeflowError):
    """Malformed count matrix, sample sheet or gene-set file."""


class AnnotationError(DgeflowError):
    """Reference lookup returned zero or multiple matches for an identifier."""


class DesignError(DgeflowError):
    """Sample sheet does not describe a valid paired two-level design."""


class NormalizationError(DgeflowError):
    """Normalization model could not be fitted."""


class ConfigError(DgeflowError):
    """Invalid or inconsistent configuration."""


class DegenerateDataError(DgeflowError):
    """A stage left nothing to analyse (e.g. no gene passed the filter)."""
