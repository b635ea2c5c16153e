import numpy as np
import pytest

from nnsunfold import (
    ConfigurationError,
    DimensionError,
    InsufficientDataError,
    calculate_derivatives,
)


def test_linear_trajectory_has_constant_derivative():
    iterations = [1000, 2000, 3000, 4000]
    values = [2 * n for n in iterations]
    np.testing.assert_allclose(calculate_derivatives(iterations, values), [2.0] * 4)


def test_uneven_spacing():
    """Forward, central and backward differences"""
    result = calculate_derivatives([0, 1, 3], [0.0, 1.0, 9.0])
    np.testing.assert_allclose(result, [1.0, 3.0, 4.0])


def test_two_samples():
    np.testing.assert_allclose(calculate_derivatives([10, 20], [5.0, 3.0]), [-0.2, -0.2])


def test_length_mismatch():
    with pytest.raises(DimensionError):
        calculate_derivatives([1, 2, 3], [1.0, 2.0])


def test_single_sample():
    with pytest.raises(InsufficientDataError):
        calculate_derivatives([1], [1.0])


@pytest.mark.parametrize("iterations", [[1, 1, 2], [3, 2, 1]])
def test_iterations_must_increase(iterations):
    with pytest.raises(ConfigurationError):
        calculate_derivatives(iterations, [1.0, 2.0, 3.0])
