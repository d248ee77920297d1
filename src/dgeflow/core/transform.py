"""
Base transformation framework for count matrix operations.

Transformations are pure: they take a CountMatrix and return a new one,
recording their parameters for the run provenance file.

Examples:
    >>> from dgeflow.core.transform import Transform
    >>>
    >>> class DropZeroRows(Transform):
    ...     def __init__(self):
    ...         super().__init__(name="DropZeroRows", params={})
    ...
    ...     def apply(self, matrix):
    ...         return matrix.select_features(matrix.counts.sum(axis=1) > 0)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from dgeflow.core.matrix import CountMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for matrix transformations.

    Attributes:
        name: Human-readable transformation name
        params: JSON-serializable parameters (written to run provenance)
        timestamp: Creation time of this transform instance
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: CountMatrix) -> CountMatrix:
        """
        Execute transformation and return a new matrix.

        The input matrix is never modified.
        """

    def validate(self, matrix: CountMatrix) -> list[str]:
        """
        Check preconditions before applying the transformation.

        Subclasses extend this and call super().validate() first.

        Returns:
            List of error messages (empty = valid)
        """
        errors: list[str] = []

        if matrix.counts.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
