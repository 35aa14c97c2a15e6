"""
Physical quantities derived from an unfolded neutron spectrum.

All functions are stateless and operate on plain numpy arrays. Spectra are
flux per energy bin, energies are in MeV, dose conversion factors in
pSv cm^2.
"""
from __future__ import annotations

from dataclasses import dataclass
import math

import numpy as np

from . import constants
from .exceptions import DomainError, ShapeError


@dataclass(frozen=True)
class SourceStrengthModel:
    """
    Empirical constants of the NCRP 151 (Eq. 2.16) fluence model.

    Attributes
    ----------
    transmission_factor : float
        Fraction of neutrons penetrating the head shielding.
    room_surface_area : float
        Treatment room surface area [cm^2].
    distance : float
        Source to measurement point distance [cm].
    mu_to_gy : float
        Monitor units to Gy calibration factor.
    scatter_coefficient : float
        Room-scattered fluence coefficient.
    thermal_coefficient : float
        Thermal fluence coefficient.
    """

    transmission_factor: float = constants.TRANSMISSION_FACTOR
    room_surface_area: float = constants.ROOM_SURFACE_AREA
    distance: float = constants.SOURCE_DISTANCE
    mu_to_gy: float = constants.MU_TO_GY
    scatter_coefficient: float = constants.SCATTER_COEFFICIENT
    thermal_coefficient: float = constants.THERMAL_COEFFICIENT

    def fluence_per_source_neutron(self) -> float:
        """Total fluence at the measurement point per emitted neutron."""
        direct = self.transmission_factor / (4 * math.pi * self.distance**2)
        scatter = (
            self.scatter_coefficient * self.transmission_factor
            / self.room_surface_area
        )
        thermal = self.thermal_coefficient / self.room_surface_area
        return direct + scatter + thermal


def _same_length(a: np.ndarray, b: np.ndarray, what: str) -> None:
    if a.shape != b.shape:
        raise ShapeError(f"{what}: shapes {a.shape} and {b.shape} differ")


def total_flux(spectrum) -> float:
    """Total flux of a spectrum (sum over energy bins)."""
    return float(np.sum(np.asarray(spectrum, dtype=float)))


def total_charge(measurements) -> float:
    """Total charge collected over a series of measurements."""
    return float(np.sum(np.asarray(measurements, dtype=float)))


def average_energy(spectrum, energy_bins) -> float:
    """
    Flux-weighted average energy of a spectrum.

    A spectrum with zero total flux returns NaN rather than raising.
    """
    s = np.asarray(spectrum, dtype=float)
    E = np.asarray(energy_bins, dtype=float)
    _same_length(s, E, "average_energy")
    flux = total_flux(s)
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.sum(E * s / flux))


def dose(spectrum, icrp_factors) -> float:
    """
    Ambient dose equivalent rate of a spectrum.

    Parameters
    ----------
    spectrum : array_like
        Flux per energy bin [n cm^-2 s^-1].
    icrp_factors : array_like
        Fluence to dose conversion factors per bin [pSv cm^2].

    Returns
    -------
    float
        Dose rate [mSv/h].
    """
    s = np.asarray(spectrum, dtype=float)
    h = np.asarray(icrp_factors, dtype=float)
    _same_length(s, h, "dose")
    dose_psv_s = float(np.sum(s * h))
    return dose_psv_s * constants.SECONDS_PER_HOUR * constants.PSV_TO_MSV


def sum_uncertainty(uncertainties) -> float:
    """Uncertainty of a sum of independent values (quadrature)."""
    u = np.asarray(uncertainties, dtype=float)
    return float(np.sqrt(np.sum(u**2)))


def energy_uncertainty(
    energy_bins,
    spectrum,
    spectrum_uncertainty,
    flux: float,
    flux_uncertainty: float,
) -> float:
    """
    Uncertainty of the average energy.

    Each term ``E_b * s_b / flux`` carries the quadrature of the relative
    uncertainties of ``s_b`` and ``flux``; the terms are then summed in
    quadrature. Bins with zero flux contribute ``E_b * sigma_b / flux``.

    Parameters
    ----------
    energy_bins : array_like
        Bin energies [MeV].
    spectrum : array_like
        Flux per bin.
    spectrum_uncertainty : array_like
        Absolute uncertainty per bin.
    flux : float
        Total flux of ``spectrum``.
    flux_uncertainty : float
        Absolute uncertainty of ``flux``.

    Returns
    -------
    float
        Absolute uncertainty of the average energy [MeV].

    Raises
    ------
    DomainError
        If ``flux`` is zero.
    """
    E = np.asarray(energy_bins, dtype=float)
    s = np.asarray(spectrum, dtype=float)
    sigma = np.asarray(spectrum_uncertainty, dtype=float)
    _same_length(E, s, "energy_uncertainty")
    _same_length(s, sigma, "energy_uncertainty")
    if flux == 0:
        raise DomainError("Average energy uncertainty undefined for zero total flux")

    rel_flux = flux_uncertainty / flux
    terms = E / flux * np.sqrt(sigma**2 + (s * rel_flux) ** 2)
    return float(np.sqrt(np.sum(terms**2)))


def source_strength(
    spectrum,
    duration: float,
    dose_mu: float,
    model: SourceStrengthModel = SourceStrengthModel(),
) -> float:
    """
    Neutron source strength (neutrons emitted per Gy at isocentre).

    The total flux is converted to fluence per Gy using the irradiation
    duration and delivered monitor units, then divided by the empirical
    fluence per source neutron of ``model``.

    Parameters
    ----------
    spectrum : array_like
        Flux per energy bin [n cm^-2 s^-1].
    duration : float
        Irradiation time [s].
    dose_mu : float
        Delivered dose [MU].
    model : SourceStrengthModel, optional
        Room and head constants.
    """
    if dose_mu == 0:
        raise DomainError("Source strength undefined for zero monitor units")
    fluence = total_flux(spectrum) * duration / dose_mu * model.mu_to_gy
    return fluence / model.fluence_per_source_neutron()


def rms_deviation(samples, true_value: float) -> float:
    """Root-mean-square deviation of sampled values from a true value."""
    x = np.asarray(samples, dtype=float)
    if x.size == 0:
        raise ShapeError("At least one sample is required")
    return float(np.sqrt(np.mean((true_value - x) ** 2)))


def rms_deviation_vector(true_vector, sampled_vectors) -> np.ndarray:
    """
    Element-wise RMS deviation of sampled vectors from a true vector.

    Parameters
    ----------
    true_vector : array_like
        Reference vector (n,).
    sampled_vectors : array_like
        Samples (n_samples, n).

    Returns
    -------
    np.ndarray
        RMS deviation per element (n,).
    """
    t = np.asarray(true_vector, dtype=float)
    samples = np.asarray(sampled_vectors, dtype=float)
    if samples.ndim != 2 or samples.shape[0] == 0:
        raise ShapeError(
            f"Expected a non-empty (n_samples, n) array, got shape {samples.shape}"
        )
    if samples.shape[1] != t.size:
        raise ShapeError(
            f"Sample length {samples.shape[1]} does not match "
            f"true vector length {t.size}"
        )
    return np.sqrt(np.mean((t - samples) ** 2, axis=0))
