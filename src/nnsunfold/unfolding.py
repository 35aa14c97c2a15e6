"""
Iterative spectrum unfolding: MLEM and its energy-regularized MAP variant.

Both algorithms share one multiplicative update. Given the response matrix
R, its normalization f and measurements y, each iteration computes

    ratio      = y / (R @ s)
    correction = R.T @ ratio
    s          = s * correction / (f + adjustment(s))

where ``adjustment`` is the zero vector for MLEM and the neighbour
smoothness penalty for MAP. The loop stops when every ratio is within
``[1 - tolerance, 1 + tolerance]`` or when the cutoff is reached.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import functools
import logging
from typing import Callable, Optional, Tuple, Union

import numpy as np

from .exceptions import DomainError, ShapeError
from .response import ResponseModel

logger = logging.getLogger(__name__)

DenominatorAdjustment = Callable[[np.ndarray], np.ndarray]
IterationCallback = Callable[[int, np.ndarray, np.ndarray], None]


class IterationState(Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


@dataclass
class IterationOutcome:
    """Result of :func:`iterate`; the spectrum itself is updated in place."""

    iterations: int
    state: IterationState
    ratios: np.ndarray
    adjustment: np.ndarray

    @property
    def converged(self) -> bool:
        return self.state is IterationState.CONVERGED


def needs_iteration(ratios: np.ndarray, tolerance: float) -> bool:
    """
    Return True if any measured/estimated ratio lies outside the tolerance.

    Parameters
    ----------
    ratios : np.ndarray
        Ratios of measured to estimated values.
    tolerance : float
        Allowed deviation from 1. Ratios within ``[1 - tolerance,
        1 + tolerance]`` (inclusive) are accepted; NaN is never accepted.

    Returns
    -------
    bool
        True to keep iterating, False to stop.
    """
    if tolerance < 0:
        raise ValueError(f"tolerance must be non-negative, got {tolerance}")
    ratios = np.asarray(ratios, dtype=float)
    within = (ratios >= 1.0 - tolerance) & (ratios <= 1.0 + tolerance)
    return not bool(np.all(within))


def no_adjustment(spectrum: np.ndarray) -> np.ndarray:
    """Denominator adjustment of plain MLEM."""
    return np.zeros_like(spectrum)


def energy_correction(spectrum: np.ndarray, beta: float) -> np.ndarray:
    """
    MAP smoothness penalty coupling each bin to its neighbours.

    Interior bins get ``beta * ((s[b] - s[b-1])**2 + (s[b] - s[b+1])**2)``,
    the first and last bins the one-sided term toward their only neighbour.

    Parameters
    ----------
    spectrum : np.ndarray
        Current spectrum estimate, at least two bins.
    beta : float
        Smoothing strength.

    Returns
    -------
    np.ndarray
        Energy correction vector, same length as ``spectrum``.
    """
    s = np.asarray(spectrum, dtype=float)
    if s.size < 2:
        raise ShapeError(
            f"Energy correction needs at least 2 energy bins, got {s.size}"
        )
    sq_diff = (s[1:] - s[:-1]) ** 2
    correction = np.empty_like(s)
    correction[0] = beta * sq_diff[0]
    correction[1:-1] = beta * (sq_diff[:-1] + sq_diff[1:])
    correction[-1] = beta * sq_diff[-1]
    return correction


def smoothness_penalty(beta: float) -> DenominatorAdjustment:
    """Return the MAP denominator adjustment for a given ``beta``."""
    if beta < 0:
        raise ValueError(f"beta must be non-negative, got {beta}")
    return functools.partial(energy_correction, beta=beta)


def _prepare(
    cutoff: int,
    tolerance: float,
    measurements,
    spectrum: np.ndarray,
    response: Union[ResponseModel, np.ndarray],
    normalization,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Validate all inputs before any numeric work is done."""
    model = response if isinstance(response, ResponseModel) else ResponseModel(response)
    R = model.matrix

    if cutoff < 0:
        raise ValueError(f"cutoff must be non-negative, got {cutoff}")
    if tolerance < 0:
        raise ValueError(f"tolerance must be non-negative, got {tolerance}")

    if not isinstance(spectrum, np.ndarray) or not np.issubdtype(
        spectrum.dtype, np.floating
    ):
        raise TypeError(
            "spectrum must be a floating-point numpy array (updated in place)"
        )
    if spectrum.ndim != 1 or spectrum.size != model.n_bins:
        raise ShapeError(
            f"Spectrum shape {spectrum.shape} does not match "
            f"{model.n_bins} energy bins"
        )
    if not spectrum.flags.writeable:
        raise TypeError("spectrum must be writeable (updated in place)")
    if np.any(spectrum < 0):
        raise ValueError("Initial spectrum contains negative entries")

    y = np.asarray(measurements, dtype=float)
    if y.ndim != 1 or y.size != model.n_measurements:
        raise ShapeError(
            f"Measurement vector shape {y.shape} does not match "
            f"{model.n_measurements} response rows"
        )
    if np.any(y < 0):
        raise ValueError("Measurement vector contains negative entries")

    if normalization is None:
        f = model.normalization()
    else:
        f = np.asarray(normalization, dtype=float)
        if f.ndim != 1 or f.size != model.n_bins:
            raise ShapeError(
                f"Normalization shape {f.shape} does not match "
                f"{model.n_bins} energy bins"
            )
    zero_bins = np.flatnonzero(f == 0)
    if zero_bins.size:
        raise DomainError(
            f"Normalization is zero for energy bins {zero_bins.tolist()}"
        )
    return R, y, f


def iterate(
    cutoff: int,
    tolerance: float,
    measurements,
    spectrum: np.ndarray,
    response: Union[ResponseModel, np.ndarray],
    normalization=None,
    adjustment: DenominatorAdjustment = no_adjustment,
    callback: Optional[IterationCallback] = None,
) -> IterationOutcome:
    """
    Run the shared MLEM/MAP fixed-point iteration.

    Parameters
    ----------
    cutoff : int
        Maximum number of iterations.
    tolerance : float
        Convergence tolerance on the measured/estimated ratios.
    measurements : array_like
        Measured values (n_measurements,).
    spectrum : np.ndarray
        Initial spectrum (n_bins,), float dtype. Updated in place.
    response : ResponseModel or array_like
        Response model or raw response matrix.
    normalization : array_like, optional
        Per-bin normalization. Defaults to the response column sums.
    adjustment : callable, optional
        Maps the current spectrum to an additive term of the update
        denominator. Defaults to the zero vector (MLEM).
    callback : callable, optional
        Called as ``callback(index, spectrum, ratios)`` after every update.

    Returns
    -------
    IterationOutcome
        Iteration index at stop, final state, last ratios and last
        adjustment vector.

    Raises
    ------
    ShapeError
        If any dimensions disagree. Nothing is mutated.
    DomainError
        If an estimated measurement or a normalization entry is zero. The
        spectrum then holds the estimate of the last completed iteration.
    """
    R, y, f = _prepare(cutoff, tolerance, measurements, spectrum, response, normalization)

    ratios = np.empty(0)
    adjust = np.zeros_like(spectrum)
    state = IterationState.RUNNING
    index = 0

    for index in range(cutoff):
        estimate = R @ spectrum
        zero_rows = np.flatnonzero(estimate == 0)
        if zero_rows.size:
            raise DomainError(
                f"Estimated measurement is zero for rows {zero_rows.tolist()} "
                f"at iteration {index}"
            )
        ratios = y / estimate
        correction = R.T @ ratios
        adjust = adjustment(spectrum)
        spectrum[:] = spectrum * correction / (f + adjust)

        if callback is not None:
            callback(index, spectrum, ratios)
        logger.debug(
            "Iteration %d: max |ratio - 1| = %.3e",
            index,
            float(np.max(np.abs(ratios - 1.0))),
        )

        if not needs_iteration(ratios, tolerance):
            state = IterationState.CONVERGED
            break
    else:
        index = cutoff
        state = IterationState.EXHAUSTED

    if state is IterationState.CONVERGED:
        logger.info("Converged after %d iterations", index)
    else:
        logger.info("Iteration cutoff (%d) reached without convergence", cutoff)
    return IterationOutcome(
        iterations=index, state=state, ratios=ratios, adjustment=adjust
    )


def run_mlem(
    cutoff: int,
    error: float,
    measurements,
    spectrum: np.ndarray,
    response: Union[ResponseModel, np.ndarray],
    normalization=None,
    callback: Optional[IterationCallback] = None,
) -> Tuple[int, np.ndarray]:
    """
    Unfold a spectrum with MLEM.

    Returns
    -------
    Tuple[int, np.ndarray]
        Iteration index at stop (``cutoff`` if not converged) and the
        ratios of the final iteration. ``spectrum`` holds the result.

    Examples
    --------
    >>> s = np.ones(2)
    >>> run_mlem(50, 0.01, [10.0, 20.0], s, [[1.0, 0.0], [0.0, 1.0]])
    (1, array([1., 1.]))
    >>> s
    array([10., 20.])
    """
    outcome = iterate(
        cutoff, error, measurements, spectrum, response, normalization,
        callback=callback,
    )
    return outcome.iterations, outcome.ratios


def run_map(
    beta: float,
    cutoff: int,
    error: float,
    measurements,
    spectrum: np.ndarray,
    response: Union[ResponseModel, np.ndarray],
    normalization=None,
    callback: Optional[IterationCallback] = None,
) -> Tuple[int, np.ndarray, np.ndarray]:
    """
    Unfold a spectrum with MAP (MLEM plus neighbour smoothness penalty).

    ``beta = 0`` reproduces :func:`run_mlem` exactly.

    Returns
    -------
    Tuple[int, np.ndarray, np.ndarray]
        Iteration index at stop, ratios and energy correction vector of the
        final iteration. ``spectrum`` holds the result.
    """
    penalty = smoothness_penalty(beta)
    n_bins = np.size(spectrum)
    if n_bins < 2:
        raise ShapeError(
            f"MAP unfolding needs at least 2 energy bins, got {n_bins}"
        )
    outcome = iterate(
        cutoff, error, measurements, spectrum, response, normalization,
        adjustment=penalty, callback=callback,
    )
    return outcome.iterations, outcome.ratios, outcome.adjustment
