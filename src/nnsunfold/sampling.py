"""
Poisson resampling of measurements for Monte-Carlo uncertainty studies.

The random generator is always supplied by the caller; create one with
:func:`make_generator` and pass it to every sampling call so that a fixed
seed reproduces a whole study.
"""
from __future__ import annotations

from typing import Optional

import numpy as np


def make_generator(seed: Optional[int] = None) -> np.random.Generator:
    """Return a new random generator, seeded from OS entropy if ``seed`` is None."""
    return np.random.default_rng(seed)


def poisson(lam: float, rng: np.random.Generator) -> float:
    """Draw one value from a Poisson distribution with mean ``lam``."""
    if lam < 0:
        raise ValueError(f"Poisson mean must be non-negative, got {lam}")
    return float(rng.poisson(lam))


def sample_measurements(
    measurements,
    rng: np.random.Generator,
    size: Optional[int] = None,
) -> np.ndarray:
    """
    Poisson-resample a measurement vector.

    Parameters
    ----------
    measurements : array_like
        Mean values (n_measurements,), e.g. counts.
    rng : np.random.Generator
        Generator owned by the caller.
    size : Optional[int], optional
        Number of resampled vectors. If None, a single vector is returned.

    Returns
    -------
    np.ndarray
        Float array of shape (n_measurements,) or (size, n_measurements).
    """
    lam = np.asarray(measurements, dtype=float)
    if np.any(lam < 0):
        raise ValueError("Poisson means must be non-negative")
    shape = lam.shape if size is None else (size,) + lam.shape
    return rng.poisson(lam, size=shape).astype(float)
