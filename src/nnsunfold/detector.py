"""Detector class with MLEM/MAP unfolding methods."""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.interpolate import PchipInterpolator

from . import constants
from .exceptions import DomainError, ShapeError
from .quantities import (
    SourceStrengthModel,
    average_energy,
    dose,
    energy_uncertainty,
    rms_deviation,
    rms_deviation_vector,
    source_strength,
    sum_uncertainty,
    total_charge,
    total_flux,
)
from .response import ResponseModel
from .sampling import make_generator, sample_measurements
from .unfolding import run_map, run_mlem

logger = logging.getLogger(__name__)


class Detector:
    """
    Neutron spectrometer with a set of named detectors and MLEM/MAP unfolding.

    Parameters
    ----------
    response_functions_df : pd.DataFrame
        Response functions. The column 'E_MeV' (or, if absent, the first
        column) holds the energy grid in MeV; every other column is the
        response of one detector per energy bin [cm^2].
    icrp_factors : Optional[array_like], optional
        Fluence to ambient dose equivalent conversion factors per energy
        bin [pSv cm^2]. Without them no dose is reported.

    Attributes
    ----------
    E_MeV : np.ndarray
        Energy grid in MeV
    detector_names : List[str]
        Names of available detectors
    response : ResponseModel
        Response of all detectors (rows follow ``detector_names``)
    sensitivities : Dict[str, np.ndarray]
        Response of each detector per energy bin
    n_detectors : int
        Number of available detectors (property)
    n_energy_bins : int
        Number of energy bins (property)

    Examples
    --------
    >>> rf_df = pd.DataFrame({"E_MeV": [0.1, 1.0], "d1": [1.0, 0.0], "d2": [0.0, 1.0]})
    >>> detector = Detector(rf_df)
    >>> result = detector.unfold_mlem({"d1": 10.0, "d2": 20.0})
    >>> result["spectrum"]
    array([10., 20.])
    """

    def __init__(self, response_functions_df, icrp_factors=None):
        E_MeV, detector_names, rf_matrix = self._convert_rf_to_matrix(
            response_functions_df
        )
        self.E_MeV = np.asarray(E_MeV, dtype=float)
        self.detector_names = detector_names

        if self.E_MeV.ndim != 1:
            raise ShapeError("E_MeV must be a 1D array")
        if len(self.E_MeV) < 2:
            raise ShapeError("At least 2 energy bins are required")

        self.response = ResponseModel(rf_matrix.T)
        self.sensitivities = {
            name: self.response.matrix[i]
            for i, name in enumerate(self.detector_names)
        }

        if icrp_factors is None:
            self.icrp_factors = None
        else:
            self.icrp_factors = np.asarray(icrp_factors, dtype=float)
            if self.icrp_factors.shape != self.E_MeV.shape:
                raise ShapeError(
                    f"ICRP factors length ({self.icrp_factors.size}) must match "
                    f"number of energy bins ({self.n_energy_bins})"
                )

        self.results_history = {}
        self.current_result = None

    def __str__(self) -> str:
        energy_range = f"{self.E_MeV[0]:.3e} - {self.E_MeV[-1]:.3e} MeV"
        return (
            f"Detector(energy bins: {self.n_energy_bins}, "
            f"detectors: {self.n_detectors}, "
            f"range: {energy_range})"
        )

    def __repr__(self) -> str:
        return (
            f"Detector(detectors={self.detector_names!r}, "
            f"n_energy_bins={self.n_energy_bins}, "
            f"response={self.response!r}, "
            f"icrp_factors={self.icrp_factors is not None})"
        )

    @property
    def n_detectors(self) -> int:
        """Number of available detectors."""
        return len(self.detector_names)

    @property
    def n_energy_bins(self) -> int:
        """Number of energy bins."""
        return len(self.E_MeV)

    def _save_result(self, result: Dict[str, Any]) -> str:
        """
        Save unfolding result to history with timestamp.

        Returns
        -------
        str
            Key under which result was saved (timestamp + method)
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        key = f"{timestamp}_{result.get('method', 'unknown')}"
        if key in self.results_history:
            key = f"{key}_{len(self.results_history)}"

        result["timestamp"] = timestamp
        result["saved_key"] = key

        self.results_history[key] = result.copy()
        self.current_result = result

        logger.info("Result saved with key: %s", key)
        return key

    def get_result(self, key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Get unfolding result from history.

        Parameters
        ----------
        key : Optional[str], optional
            Result key. If None, returns current result
        """
        if key is None:
            return self.current_result
        return self.results_history.get(key)

    def list_results(self) -> List[str]:
        """List all saved result keys, sorted by timestamp."""
        return sorted(self.results_history.keys())

    def clear_results(self) -> None:
        """Clear all saved results."""
        self.results_history.clear()
        self.current_result = None
        logger.info("All results cleared.")

    def _validate_readings(self, readings: Dict[str, float]) -> Dict[str, float]:
        """
        Validate detector readings.

        Raises
        ------
        ValueError
            If readings are negative or no known detector readings are provided
        """
        valid = {}
        for det in self.detector_names:
            if det in readings:
                val = float(readings[det])
                if val < 0:
                    raise ValueError(f"Reading '{det}' is negative: {val}")
                valid[det] = val
        if not valid:
            raise ValueError("No detector readings provided")
        unknown = set(readings) - set(self.detector_names)
        if unknown:
            logger.warning("Ignoring readings of unknown detectors: %s", sorted(unknown))
        return valid

    def _build_system(
        self, readings: Dict[str, float]
    ) -> Tuple[ResponseModel, np.ndarray, List[str]]:
        """
        Build the response model and measurement vector of the read detectors.

        Returns
        -------
        Tuple[ResponseModel, np.ndarray, List[str]]
            model: Response of the selected detectors
            b: Measurement vector
            selected: List of selected detector names
        """
        selected = [name for name in self.detector_names if name in readings]
        rows = [self.detector_names.index(name) for name in selected]
        b = np.array([readings[name] for name in selected], dtype=float)
        return self.response.select(rows), b, selected

    def _validate_initial_spectrum(
        self,
        initial_spectrum: Optional[np.ndarray],
        default_value: float = 1.0,
    ) -> np.ndarray:
        """Validate and prepare an initial spectrum guess (always a new array)."""
        if initial_spectrum is None:
            return np.full(self.n_energy_bins, default_value, dtype=float)
        x0 = np.array(initial_spectrum, dtype=float)
        if x0.shape != (self.n_energy_bins,):
            raise ShapeError(
                f"Initial spectrum length ({x0.size}) "
                f"must match number of energy bins ({self.n_energy_bins})"
            )
        if np.any(x0 < 0):
            raise ValueError("Initial spectrum contains negative entries")
        if np.any(x0 == 0):
            logger.warning(
                "Initial spectrum has zero bins; they stay zero during unfolding"
            )
        return x0

    def _standardize_output(
        self,
        spectrum: np.ndarray,
        model: ResponseModel,
        b: np.ndarray,
        selected: List[str],
        method: str,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Create standardized output dictionary for all unfolding methods.

        Returns
        -------
        Dict[str, Any]
            energy, spectrum, effective readings, residual, derived
            quantities and whatever is passed in ``kwargs``
        """
        computed_readings = model.forward_project(spectrum)
        residual = b - computed_readings

        output = {
            "energy": self.E_MeV.copy(),
            "spectrum": spectrum.copy(),
            "effective_readings": {
                name: float(val) for name, val in zip(selected, computed_readings)
            },
            "residual": residual,
            "residual_norm": float(np.linalg.norm(residual)),
            "method": method,
            "total_charge": total_charge(b),
            "total_flux": total_flux(spectrum),
            "average_energy": average_energy(spectrum, self.E_MeV),
            "dose": (
                dose(spectrum, self.icrp_factors)
                if self.icrp_factors is not None
                else None
            ),
        }
        output.update(kwargs)
        return output

    @staticmethod
    def _uncertainty_stats(samples: np.ndarray) -> Dict[str, Any]:
        """Compute summary statistics from Monte-Carlo samples."""
        return {
            "spectrum_uncert_mean": np.mean(samples, axis=0),
            "spectrum_uncert_std": np.std(samples, axis=0),
            "spectrum_uncert_min": np.min(samples, axis=0),
            "spectrum_uncert_max": np.max(samples, axis=0),
            "spectrum_uncert_median": np.median(samples, axis=0),
            "spectrum_uncert_percentile_5": np.percentile(samples, 5, axis=0),
            "spectrum_uncert_percentile_95": np.percentile(samples, 95, axis=0),
            "spectrum_uncert_all": samples,
        }

    def _monte_carlo_uncertainty(
        self,
        b: np.ndarray,
        spectrum: np.ndarray,
        solver_fn: Callable[[np.ndarray], np.ndarray],
        n_montecarlo: int,
        rng: np.random.Generator,
    ) -> Dict[str, Any]:
        """
        Propagate Poisson counting statistics of the readings to the spectrum.

        Every sample of the readings is unfolded with ``solver_fn``; the
        spread of the unfolded spectra gives the spectrum uncertainty, which
        is then propagated to total flux and average energy.
        """
        if n_montecarlo < 1:
            raise ValueError(f"n_montecarlo must be positive, got {n_montecarlo}")
        logger.info(
            "Calculating uncertainty with %d Monte-Carlo samples...", n_montecarlo
        )
        sampled_readings = sample_measurements(b, rng, size=n_montecarlo)
        unfolded = []
        failed = 0
        for i, b_mc in enumerate(sampled_readings):
            try:
                unfolded.append(solver_fn(b_mc))
            except DomainError as exc:
                failed += 1
                logger.warning("Monte-Carlo sample %d skipped: %s", i, exc)

        flux = total_flux(spectrum)
        if not unfolded:
            logger.warning(
                "All %d Monte-Carlo samples failed; uncertainties are undefined",
                n_montecarlo,
            )
            stats = {
                key: np.full(self.n_energy_bins, np.nan)
                for key in (
                    "spectrum_uncert_mean",
                    "spectrum_uncert_std",
                    "spectrum_uncert_min",
                    "spectrum_uncert_max",
                    "spectrum_uncert_median",
                    "spectrum_uncert_percentile_5",
                    "spectrum_uncert_percentile_95",
                    "spectrum_rmsd",
                )
            }
            stats.update(
                spectrum_uncert_all=np.empty((0, self.n_energy_bins)),
                montecarlo_samples=n_montecarlo,
                montecarlo_failed=failed,
                total_flux_uncertainty=float("nan"),
                total_flux_rmsd=float("nan"),
                average_energy_uncertainty=float("nan"),
            )
            return stats

        samples = np.array(unfolded)
        stats = self._uncertainty_stats(samples)
        stats["montecarlo_samples"] = n_montecarlo
        stats["montecarlo_failed"] = failed
        stats["spectrum_rmsd"] = rms_deviation_vector(spectrum, samples)

        flux_uncertainty = sum_uncertainty(stats["spectrum_uncert_std"])
        stats["total_flux_uncertainty"] = flux_uncertainty
        stats["total_flux_rmsd"] = rms_deviation(samples.sum(axis=1), flux)
        stats["average_energy_uncertainty"] = (
            energy_uncertainty(
                self.E_MeV, spectrum, stats["spectrum_uncert_std"],
                flux, flux_uncertainty,
            )
            if flux > 0
            else float("nan")
        )
        logger.info("Uncertainty calculation completed.")
        return stats

    def unfold_mlem(
        self,
        readings: Dict[str, float],
        initial_spectrum: Optional[np.ndarray] = None,
        max_iterations: int = constants.DEFAULT_CUTOFF,
        tolerance: float = constants.DEFAULT_TOLERANCE,
        calculate_errors: bool = False,
        n_montecarlo: int = constants.DEFAULT_N_MONTECARLO,
        rng: Optional[np.random.Generator] = None,
    ) -> Dict[str, Any]:
        """
        Unfold neutron spectrum with MLEM.

        Parameters
        ----------
        readings : Dict[str, float]
            Detector readings (counts or count rates)
        initial_spectrum : Optional[np.ndarray], optional
            Initial spectrum guess; must be positive wherever flux is
            expected. If None, a uniform spectrum of ones is used
        max_iterations : int, optional
            Iteration cutoff
        tolerance : float, optional
            Allowed deviation of measured/estimated ratios from 1
        calculate_errors : bool, optional
            Estimate uncertainties by Poisson resampling of the readings,
            which must then be counts
        n_montecarlo : int, optional
            Number of Monte-Carlo samples
        rng : Optional[np.random.Generator], optional
            Generator for resampling. A new unseeded one if None

        Returns
        -------
        Dict[str, Any]
            Standardized result with 'iterations', 'converged' and 'ratios'
            of the final iteration, plus 'spectrum_uncert_*',
            'total_flux_uncertainty' and 'average_energy_uncertainty' when
            ``calculate_errors`` is set
        """

        def _solve(model: ResponseModel, b: np.ndarray, x0: np.ndarray):
            x = x0.copy()
            n_iter, ratios = run_mlem(max_iterations, tolerance, b, x, model)
            return x, n_iter, ratios

        return self._unfold(
            readings, initial_spectrum, _solve, "MLEM",
            max_iterations=max_iterations,
            tolerance=tolerance,
            calculate_errors=calculate_errors,
            n_montecarlo=n_montecarlo,
            rng=rng,
        )

    def unfold_map(
        self,
        readings: Dict[str, float],
        beta: float,
        initial_spectrum: Optional[np.ndarray] = None,
        max_iterations: int = constants.DEFAULT_CUTOFF,
        tolerance: float = constants.DEFAULT_TOLERANCE,
        calculate_errors: bool = False,
        n_montecarlo: int = constants.DEFAULT_N_MONTECARLO,
        rng: Optional[np.random.Generator] = None,
    ) -> Dict[str, Any]:
        """
        Unfold neutron spectrum with MAP (MLEM with energy smoothness prior).

        Parameters
        ----------
        readings : Dict[str, float]
            Detector readings
        beta : float
            Smoothing strength, non-negative. 0 reproduces MLEM
        initial_spectrum, max_iterations, tolerance, calculate_errors,
        n_montecarlo, rng
            As for :meth:`unfold_mlem`

        Returns
        -------
        Dict[str, Any]
            As :meth:`unfold_mlem`, plus 'beta' and the final
            'energy_correction' vector
        """
        energy_corrections = []

        def _solve(model: ResponseModel, b: np.ndarray, x0: np.ndarray):
            x = x0.copy()
            n_iter, ratios, correction = run_map(
                beta, max_iterations, tolerance, b, x, model
            )
            energy_corrections.append(correction)
            return x, n_iter, ratios

        output = self._unfold(
            readings, initial_spectrum, _solve, "MAP",
            max_iterations=max_iterations,
            tolerance=tolerance,
            calculate_errors=calculate_errors,
            n_montecarlo=n_montecarlo,
            rng=rng,
            beta=beta,
        )
        output["energy_correction"] = energy_corrections[0]
        return output

    def _unfold(
        self,
        readings: Dict[str, float],
        initial_spectrum: Optional[np.ndarray],
        solve: Callable[
            [ResponseModel, np.ndarray, np.ndarray],
            Tuple[np.ndarray, int, np.ndarray],
        ],
        method: str,
        max_iterations: int,
        tolerance: float,
        calculate_errors: bool,
        n_montecarlo: int,
        rng: Optional[np.random.Generator],
        **kwargs,
    ) -> Dict[str, Any]:
        """Shared driver of the MLEM and MAP methods."""
        validated_readings = self._validate_readings(readings)
        model, b, selected = self._build_system(validated_readings)
        x0 = self._validate_initial_spectrum(initial_spectrum)

        spectrum, n_iter, ratios = solve(model, b, x0)

        output = self._standardize_output(
            spectrum=spectrum,
            model=model,
            b=b,
            selected=selected,
            method=method,
            iterations=n_iter,
            converged=n_iter < max_iterations,
            ratios=ratios,
            tolerance=tolerance,
            **kwargs,
        )

        if calculate_errors:
            if rng is None:
                rng = make_generator()
            output.update(
                self._monte_carlo_uncertainty(
                    b,
                    spectrum,
                    solver_fn=lambda b_mc: solve(model, b_mc, x0)[0],
                    n_montecarlo=n_montecarlo,
                    rng=rng,
                )
            )
        self._save_result(output)
        return output

    def source_strength(
        self,
        spectrum,
        duration: float,
        dose_mu: float,
        model: Optional[SourceStrengthModel] = None,
    ) -> float:
        """Neutron source strength of an unfolded spectrum, see :func:`source_strength`."""
        if model is None:
            model = SourceStrengthModel()
        return source_strength(spectrum, duration, dose_mu, model)

    @staticmethod
    def _split_energy_column(df: pd.DataFrame) -> Tuple[np.ndarray, pd.DataFrame]:
        """Return energies and the remaining columns of a spectra/response table."""
        if "E_MeV" in df.columns:
            energies = df["E_MeV"].to_numpy(dtype=float)
            data = df.drop("E_MeV", axis=1)
        else:
            energies = df.iloc[:, 0].to_numpy(dtype=float)
            data = df.iloc[:, 1:]
        return energies, data

    def _convert_rf_to_matrix(self, rf_df) -> tuple:
        """
        Convert response functions DataFrame to a matrix.

        Returns
        -------
        tuple: (energies, detector_names, matrix)
            energies : np.ndarray
                Energy grid in MeV
            detector_names : list
                Column names of the detectors
            matrix : np.ndarray
                Matrix of size (n_energies, n_detectors)
        """
        if not isinstance(rf_df, pd.DataFrame):
            raise TypeError(
                f"Response functions must be a pandas DataFrame, got {type(rf_df)}"
            )
        energies, rf_data = self._split_energy_column(rf_df)
        if rf_data.shape[1] == 0:
            raise ShapeError("Response functions table has no detector columns")
        return energies, rf_data.columns.tolist(), rf_data.to_numpy(dtype=float)

    @staticmethod
    def _as_spectra_frame(spectra) -> pd.DataFrame:
        if isinstance(spectra, dict):
            return pd.DataFrame(spectra)
        if isinstance(spectra, pd.DataFrame):
            return spectra.copy()
        raise TypeError(
            "Input spectra must be either a pandas DataFrame or a dictionary. "
            f"Got type: {type(spectra)}"
        )

    def discretize_spectra(self, spectra) -> pd.DataFrame:
        """
        Interpolate spectra onto the detector energy grid (PCHIP in log energy).

        Values outside the input energy range and negative interpolated
        values are set to zero.

        Parameters
        ----------
        spectra : pandas.DataFrame or dict
            Energies in 'E_MeV' (or the first column) and one or more
            spectrum columns.

        Returns
        -------
        pandas.DataFrame
            'E_MeV' plus one column per input spectrum, same names
        """
        spectra_df = self._as_spectra_frame(spectra)
        energies, spectra_data = self._split_energy_column(spectra_df)

        if self.E_MeV.min() < energies.min():
            logger.warning(
                "Target energy bins extend below the input grid minimum; "
                "setting values to zero."
            )
        if self.E_MeV.max() > energies.max():
            logger.warning(
                "Target energy bins extend above the input grid maximum; "
                "setting values to zero."
            )

        Emin = self.E_MeV.min()
        u = np.log10(energies / Emin)
        u_new = np.log10(self.E_MeV / Emin)
        outside = (u_new < u.min()) | (u_new > u.max())

        new_spectra = pd.DataFrame({"E_MeV": self.E_MeV})
        for name in spectra_data.columns:
            values = spectra_data[name].to_numpy(dtype=float)
            interp_vals = PchipInterpolator(u, values)(u_new)
            interp_vals[outside] = 0.0
            interp_vals[interp_vals < 0] = 0.0
            new_spectra[name] = interp_vals
        return new_spectra

    def get_effective_readings_for_spectra(self, spectra) -> Dict[str, float]:
        """
        Expected reading of every detector for a given spectrum.

        The spectrum is interpolated onto the detector energy grid if its
        energies differ, then forward-projected through the response.

        Parameters
        ----------
        spectra : pandas.DataFrame or dict
            Energies in 'E_MeV' (or the first column) and the spectrum in
            'Phi' (or the second column).

        Returns
        -------
        dict
            {detector_name: reading, ...}
        """
        spectra_df = self._as_spectra_frame(spectra)
        input_energies, _ = self._split_energy_column(spectra_df)

        same_grid = input_energies.shape == self.E_MeV.shape and np.allclose(
            input_energies, self.E_MeV, rtol=1e-12, atol=0.0
        )
        if not same_grid:
            spectra_df = self.discretize_spectra(spectra_df)

        if "Phi" in spectra_df.columns:
            spectrum_values = spectra_df["Phi"].to_numpy(dtype=float)
        elif spectra_df.shape[1] >= 2:
            spectrum_values = spectra_df.iloc[:, 1].to_numpy(dtype=float)
        else:
            raise ShapeError(
                f"Spectrum table must have at least 2 columns, got {spectra_df.shape[1]}"
            )

        readings = self.response.forward_project(spectrum_values)
        return {
            name: float(max(0.0, reading))
            for name, reading in zip(self.detector_names, readings)
        }
