import numpy as np
import pytest

from nnsunfold import ConfigurationError, MAPSolver, MLEMSolver, run_map
from nnsunfold.priors import (
    PRIORS,
    entropy_gradient,
    get_prior,
    quadratic_gradient,
    total_variation_gradient,
)

RESPONSE = np.array(
    [
        [1.0, 0.5, 0.2, 0.1],
        [0.3, 1.0, 0.6, 0.2],
        [0.1, 0.3, 0.8, 1.0],
    ]
)


@pytest.fixture
def measurements():
    return RESPONSE @ np.array([2.0, 1.0, 3.0, 0.5])


@pytest.mark.parametrize("steps", [1, 5, 30])
def test_beta_zero_matches_mlem(measurements, steps):
    """Without regularization MAP reproduces MLEM bin for bin"""
    mlem = MLEMSolver(RESPONSE, measurements, np.ones(4)).run(steps + 1, 1e-9)
    map_run = MAPSolver(RESPONSE, measurements, np.ones(4), beta=0.0).run(
        steps + 1, 1e-9
    )

    assert map_run.num_iterations == mlem.num_iterations
    np.testing.assert_array_equal(map_run.spectrum, mlem.spectrum)
    np.testing.assert_array_equal(map_run.energy_correction, np.ones(4))


def test_positive_beta_changes_the_trajectory(measurements):
    mlem = MLEMSolver(RESPONSE, measurements, np.ones(4)).run(50, 1e-9)
    map_run = MAPSolver(RESPONSE, measurements, np.ones(4), beta=0.05).run(50, 1e-9)

    assert not np.allclose(map_run.spectrum, mlem.spectrum)
    assert not np.allclose(map_run.energy_correction, 1.0)
    assert np.all(map_run.spectrum > 0)


@pytest.mark.parametrize("prior", ["gaussian", "entropy", "total_variation", "QUADRATIC"])
def test_priors_run(measurements, prior):
    run = MAPSolver(RESPONSE, measurements, np.ones(4), beta=1e-3, prior=prior).run(
        50, 0.01
    )
    assert np.all(run.spectrum > 0)
    assert run.energy_correction.shape == (4,)


@pytest.mark.parametrize("beta", [-0.1, np.nan, np.inf])
def test_invalid_beta(measurements, beta):
    with pytest.raises(ConfigurationError):
        MAPSolver(RESPONSE, measurements, np.ones(4), beta=beta)


def test_unknown_prior(measurements):
    with pytest.raises(ConfigurationError):
        MAPSolver(RESPONSE, measurements, np.ones(4), beta=0.1, prior="laplace")


def test_non_positive_energy_correction_is_fatal():
    """A dip surrounded by large bins drives the quadratic correction negative"""
    solver = MAPSolver(np.eye(3), [1.0, 1.0, 1.0], [1.0, 0.01, 1.0], beta=10.0)

    with pytest.raises(ConfigurationError, match="Energy correction"):
        solver.run(10, 0.1)


def test_run_map_in_place(measurements):
    spectrum = np.ones(4)
    energy_correction = np.zeros(4)

    run = run_map(
        spectrum,
        measurements,
        RESPONSE,
        20,
        1e-9,
        beta=1e-3,
        energy_correction=energy_correction,
    )

    np.testing.assert_array_equal(spectrum, run.spectrum)
    np.testing.assert_array_equal(energy_correction, run.energy_correction)


class TestPriorGradients:
    def test_quadratic_of_flat_spectrum_is_zero(self):
        np.testing.assert_array_equal(quadratic_gradient(np.full(5, 3.0)), np.zeros(5))

    def test_quadratic_neighbour_differences(self):
        np.testing.assert_allclose(
            quadratic_gradient(np.array([1.0, 3.0, 2.0])), [-2.0, 3.0, -1.0]
        )

    def test_entropy_of_flat_spectrum_is_zero(self):
        np.testing.assert_allclose(entropy_gradient(np.full(4, 2.0)), np.zeros(4))

    def test_entropy_single_bin(self):
        np.testing.assert_array_equal(entropy_gradient(np.array([2.0])), [0.0])

    def test_total_variation_is_bounded(self):
        grad = total_variation_gradient(np.array([1.0, 100.0, 1.0]))
        assert np.all(np.abs(grad) <= 2.0)

    def test_registry(self):
        assert set(PRIORS) == {"quadratic", "gaussian", "entropy", "total_variation"}
        assert get_prior("gaussian") is quadratic_gradient
        custom = lambda s: np.zeros_like(s)
        assert get_prior(custom) is custom
