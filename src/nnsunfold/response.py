"""Detector response matrix and its normalization vector."""
from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from .exceptions import ShapeError


def as_response_matrix(matrix) -> np.ndarray:
    """
    Validate a response matrix and return it as a 2D float array.

    Parameters
    ----------
    matrix : array_like
        Response matrix (n_measurements, n_energy_bins). Nested sequences
        are checked for ragged rows before any conversion.

    Returns
    -------
    np.ndarray
        Float copy of the matrix.

    Raises
    ------
    ShapeError
        If the matrix is empty, not two-dimensional or ragged.
    ValueError
        If the matrix contains negative or non-finite entries.
    """
    if not isinstance(matrix, np.ndarray):
        rows = list(matrix)
        if not rows:
            raise ShapeError("Response matrix is empty")
        lengths = set()
        for row in rows:
            if np.ndim(row) != 1:
                raise ShapeError("Response matrix rows must be one-dimensional")
            lengths.add(len(row))
        if len(lengths) != 1:
            raise ShapeError(
                f"Response matrix is ragged: row lengths {sorted(lengths)}"
            )
        matrix = rows

    R = np.array(matrix, dtype=float)
    if R.ndim != 2:
        raise ShapeError(f"Response matrix must be 2D, got {R.ndim}D")
    if R.size == 0:
        raise ShapeError(f"Response matrix is empty: shape {R.shape}")
    if not np.all(np.isfinite(R)):
        raise ValueError("Response matrix contains non-finite entries")
    if np.any(R < 0):
        raise ValueError("Response matrix contains negative entries")
    return R


def build_normalization(matrix) -> np.ndarray:
    """Return per-bin sums of the response over all measurements."""
    R = as_response_matrix(matrix)
    return R.sum(axis=0)


class ResponseModel:
    """
    Response matrix of a detector set together with its normalization.

    Rows are measurements, columns are energy bins. The matrix is stored
    read-only so the same model can be shared between reconstruction runs.

    Parameters
    ----------
    matrix : array_like
        Response matrix (n_measurements, n_energy_bins), units of area.

    Examples
    --------
    >>> model = ResponseModel([[1.0, 0.5], [0.2, 1.0]])
    >>> model.normalization()
    array([1.2, 1.5])
    """

    def __init__(self, matrix):
        self._matrix: Optional[np.ndarray] = None
        self._normalization: Optional[np.ndarray] = None
        self.build(matrix)

    def build(self, matrix) -> "ResponseModel":
        """Replace the response matrix and drop the cached normalization."""
        R = as_response_matrix(matrix)
        R.flags.writeable = False
        self._matrix = R
        self._normalization = None
        return self

    def __repr__(self) -> str:
        return (
            f"ResponseModel(n_measurements={self.n_measurements}, "
            f"n_bins={self.n_bins})"
        )

    @property
    def matrix(self) -> np.ndarray:
        """Read-only response matrix."""
        return self._matrix

    @property
    def n_measurements(self) -> int:
        return self._matrix.shape[0]

    @property
    def n_bins(self) -> int:
        return self._matrix.shape[1]

    def normalization(self) -> np.ndarray:
        """
        Per-bin normalization vector, computed on first access.

        Returns
        -------
        np.ndarray
            Read-only vector of length n_bins.
        """
        if self._normalization is None:
            f = self._matrix.sum(axis=0)
            f.flags.writeable = False
            self._normalization = f
        return self._normalization

    def forward_project(self, spectrum: np.ndarray) -> np.ndarray:
        """Expected measurements for a spectrum."""
        return self._matrix @ spectrum

    def back_project(self, ratios: np.ndarray) -> np.ndarray:
        """Per-bin correction factors from measurement ratios."""
        return self._matrix.T @ ratios

    def select(self, rows: Sequence[int]) -> "ResponseModel":
        """Return a new model holding only the given measurement rows."""
        rows = list(rows)
        if not rows:
            raise ShapeError("At least one measurement row must be selected")
        return ResponseModel(self._matrix[rows])
