import math
import warnings

import numpy as np
import pytest

from nnsunfold import (
    DomainError,
    ShapeError,
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


def test_total_flux_and_charge():
    assert total_flux([1.0, 2.5, 0.5]) == pytest.approx(4.0)
    assert total_charge(np.array([0.1, 0.2, 0.3])) == pytest.approx(0.6)


def test_average_energy():
    assert average_energy([1.0, 3.0], [2.0, 4.0]) == pytest.approx(3.5)


def test_average_energy_zero_flux_is_nan_without_warning():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert math.isnan(average_energy([0.0, 0.0], [1.0, 2.0]))


def test_average_energy_length_mismatch():
    with pytest.raises(ShapeError):
        average_energy([1.0, 2.0], [1.0])


def test_dose_converts_psv_per_s_to_msv_per_h():
    # 50 pSv/s -> 50 * 3600 * 1e-9 mSv/h
    assert dose([1.0, 2.0], [10.0, 20.0]) == pytest.approx(1.8e-4)


def test_sum_uncertainty_quadrature():
    assert sum_uncertainty([3.0, 4.0]) == pytest.approx(5.0)
    assert sum_uncertainty([]) == 0.0


def test_energy_uncertainty_matches_relative_error_form():
    E = np.array([0.1, 1.0, 10.0])
    s = np.array([2.0, 5.0, 1.0])
    sigma = np.array([0.2, 0.4, 0.3])
    flux = s.sum()
    flux_sigma = sum_uncertainty(sigma)

    expected = 0.0
    for e, x, u in zip(E, s, sigma):
        term = e * x / flux * math.sqrt((u / x) ** 2 + (flux_sigma / flux) ** 2)
        expected += term**2
    expected = math.sqrt(expected)

    assert energy_uncertainty(E, s, sigma, flux, flux_sigma) == pytest.approx(
        expected, rel=1e-12
    )


def test_energy_uncertainty_zero_bin_contribution():
    result = energy_uncertainty([2.0, 4.0], [0.0, 10.0], [1.0, 0.0], 10.0, 0.0)
    assert result == pytest.approx(2.0 * 1.0 / 10.0)


def test_energy_uncertainty_zero_flux():
    with pytest.raises(DomainError):
        energy_uncertainty([1.0], [0.0], [0.1], 0.0, 0.1)


def test_source_strength_default_model():
    spectrum = [100.0, 200.0, 300.0]
    duration, dose_mu = 60.0, 400.0
    fluence = 600.0 * duration / dose_mu * 100
    per_neutron = (
        0.93 / (4 * math.pi * 100**2)
        + 5.4 * 0.93 / 2353374.529
        + 1.26 / 2353374.529
    )
    assert source_strength(spectrum, duration, dose_mu) == pytest.approx(
        fluence / per_neutron
    )


def test_source_strength_custom_geometry():
    spectrum = [1.0, 1.0]
    near = source_strength(spectrum, 10.0, 10.0, SourceStrengthModel(distance=50.0))
    far = source_strength(spectrum, 10.0, 10.0)
    assert near < far


def test_source_strength_zero_monitor_units():
    with pytest.raises(DomainError):
        source_strength([1.0], 10.0, 0.0)


def test_rms_deviation():
    assert rms_deviation([1.0, 3.0], 2.0) == pytest.approx(1.0)
    with pytest.raises(ShapeError):
        rms_deviation([], 1.0)


def test_rms_deviation_vector():
    result = rms_deviation_vector([1.0, 2.0], [[0.0, 2.0], [2.0, 2.0]])
    np.testing.assert_allclose(result, [1.0, 0.0])
    with pytest.raises(ShapeError):
        rms_deviation_vector([1.0, 2.0], [[1.0, 2.0, 3.0]])
    with pytest.raises(ShapeError):
        rms_deviation_vector([1.0, 2.0], np.empty((0, 2)))
