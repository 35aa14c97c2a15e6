import numpy as np
import pytest

from nnsunfold import DomainError, ResponseModel, ShapeError, needs_iteration, run_mlem
from nnsunfold.unfolding import IterationState, iterate


def test_identity_response_converges_in_one_iteration():
    spectrum = np.array([1.0, 1.0])
    iterations, ratios = run_mlem(
        50, 0.01, [10.0, 20.0], spectrum, [[1.0, 0.0], [0.0, 1.0]]
    )
    assert iterations == 1
    np.testing.assert_array_equal(spectrum, [10.0, 20.0])
    np.testing.assert_array_equal(ratios, [1.0, 1.0])


def test_scaled_identity_response_first_iteration():
    history = []
    spectrum = np.array([1.0, 1.0])
    iterations, ratios = run_mlem(
        50, 0.01, [10.0, 20.0], spectrum, [[2.0, 0.0], [0.0, 2.0]],
        normalization=[2.0, 2.0],
        callback=lambda i, s, r: history.append(s.copy()),
    )
    np.testing.assert_array_equal(history[0], [5.0, 10.0])
    np.testing.assert_array_equal(spectrum, [5.0, 10.0])
    np.testing.assert_array_equal(ratios, [1.0, 1.0])
    assert iterations == 1


def test_consistent_data_converges():
    R = np.array([[1.0, 0.5], [0.2, 1.0]])
    true_spectrum = np.array([2.0, 1.0])
    spectrum = np.array([0.3, 3.0])
    cutoff = 10000
    iterations, ratios = run_mlem(cutoff, 1e-6, R @ true_spectrum, spectrum, R)
    assert iterations < cutoff
    assert np.all(np.abs(ratios - 1.0) <= 1e-6)
    np.testing.assert_allclose(spectrum, true_spectrum, rtol=1e-3)


def test_cutoff_exhausted():
    R = np.array([[1.0, 0.5], [0.2, 1.0]])
    spectrum = np.ones(2)
    outcome = iterate(3, 1e-12, R @ np.array([5.0, 0.1]), spectrum, R)
    assert outcome.iterations == 3
    assert outcome.state is IterationState.EXHAUSTED
    assert not outcome.converged


def test_zero_cutoff_does_nothing():
    spectrum = np.array([1.0, 2.0])
    iterations, ratios = run_mlem(0, 0.01, [1.0, 1.0], spectrum, np.eye(2))
    assert iterations == 0
    assert ratios.size == 0
    np.testing.assert_array_equal(spectrum, [1.0, 2.0])


def test_spectrum_stays_non_negative():
    rng = np.random.default_rng(3)
    R = rng.random((6, 20))
    measurements = rng.random(6) * 100
    spectrum = np.ones(20)

    def check(index, s, ratios):
        assert np.all(s >= 0), f"negative flux at iteration {index}"

    run_mlem(200, 1e-9, measurements, spectrum, R, callback=check)


def test_converged_iteration_change_is_bounded_by_tolerance():
    R = np.array([[1.0, 0.5, 0.2], [0.2, 1.0, 0.4], [0.1, 0.3, 1.0]])
    y = R @ np.array([3.0, 1.0, 2.0])
    tolerance = 1e-4
    history = [np.ones(3)]
    spectrum = np.ones(3)
    iterations, ratios = run_mlem(
        20000, tolerance, y, spectrum, R,
        callback=lambda i, s, r: history.append(s.copy()),
    )
    assert iterations < 20000
    assert not needs_iteration(ratios, tolerance)

    before, after = history[-2], history[-1]
    np.testing.assert_array_equal(after, spectrum)
    assert np.all(np.abs(after - before) <= tolerance * before * (1 + 1e-9))


def test_deterministic_and_model_equivalent():
    R = np.array([[0.9, 0.4, 0.1], [0.3, 0.8, 0.5]])
    y = np.array([4.0, 7.0])
    a = np.ones(3)
    b = np.ones(3)
    res_a = run_mlem(37, 1e-12, y, a, R)
    res_b = run_mlem(37, 1e-12, y, b, ResponseModel(R))
    assert res_a[0] == res_b[0]
    np.testing.assert_array_equal(a, b)
    np.testing.assert_array_equal(res_a[1], res_b[1])


def test_ragged_response_fails_before_mutation():
    spectrum = np.array([1.0, 1.0])
    with pytest.raises(ShapeError):
        run_mlem(10, 0.01, [1.0, 1.0], spectrum, [[1.0, 0.0], [1.0]])
    np.testing.assert_array_equal(spectrum, [1.0, 1.0])


@pytest.mark.parametrize(
    "measurements, spectrum, normalization",
    [
        ([1.0], np.ones(2), None),
        ([1.0, 1.0], np.ones(3), None),
        ([1.0, 1.0], np.ones(2), [1.0, 1.0, 1.0]),
    ],
)
def test_length_mismatch_raises_shape_error(measurements, spectrum, normalization):
    with pytest.raises(ShapeError):
        run_mlem(10, 0.01, measurements, spectrum, np.eye(2), normalization)


def test_spectrum_must_be_updatable_in_place():
    with pytest.raises(TypeError):
        run_mlem(10, 0.01, [1.0, 1.0], [1.0, 1.0], np.eye(2))
    with pytest.raises(TypeError):
        run_mlem(10, 0.01, [1.0, 1.0], np.ones(2, dtype=int), np.eye(2))


def test_invalid_scalars():
    with pytest.raises(ValueError):
        run_mlem(-1, 0.01, [1.0, 1.0], np.ones(2), np.eye(2))
    with pytest.raises(ValueError):
        run_mlem(10, -0.01, [1.0, 1.0], np.ones(2), np.eye(2))


def test_zero_normalization_raises_domain_error():
    spectrum = np.ones(2)
    with pytest.raises(DomainError):
        run_mlem(10, 0.01, [1.0, 1.0], spectrum, [[1.0, 0.0], [1.0, 0.0]])
    np.testing.assert_array_equal(spectrum, [1.0, 1.0])


def test_negative_measurements_rejected_before_mutation():
    spectrum = np.array([1.0, 1.0])
    with pytest.raises(ValueError, match="negative"):
        run_mlem(10, 0.01, [-1.0, 1.0], spectrum, np.eye(2))
    np.testing.assert_array_equal(spectrum, [1.0, 1.0])


def test_zero_estimate_raises_domain_error():
    spectrum = np.array([0.0, 1.0])
    with pytest.raises(DomainError):
        run_mlem(10, 0.01, [1.0, 1.0], spectrum, np.eye(2))
    np.testing.assert_array_equal(spectrum, [0.0, 1.0])


class TestNeedsIteration:
    @pytest.mark.parametrize(
        "ratios, tolerance, expected",
        [
            ([1.0, 1.0], 0.0, False),
            ([1.5, 0.5], 0.5, False),
            ([1.0, 1.5000001], 0.5, True),
            ([0.4999999, 1.0], 0.5, True),
            ([1.0, np.nan], 0.5, True),
            ([1.0, np.inf], 0.5, True),
        ],
    )
    def test_tolerance_band(self, ratios, tolerance, expected):
        assert needs_iteration(np.array(ratios), tolerance) is expected

    def test_order_independent(self):
        ratios = np.array([1.0, 0.999, 1.2, 1.001])
        assert needs_iteration(ratios, 0.01) == needs_iteration(ratios[::-1], 0.01)

    def test_negative_tolerance(self):
        with pytest.raises(ValueError):
            needs_iteration(np.ones(2), -1.0)
