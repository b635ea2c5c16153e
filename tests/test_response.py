import numpy as np
import pandas as pd
import pytest

from nnsunfold import ConfigurationError, DimensionError, ResponseModel
from nnsunfold.response import as_response_model, normalize


@pytest.fixture
def matrix():
    """Three detectors, four energy bins."""
    return np.array(
        [
            [1.0, 0.5, 0.2, 0.1],
            [0.3, 1.0, 0.6, 0.2],
            [0.1, 0.3, 0.8, 1.0],
        ]
    )


def test_normalize_returns_column_sums(matrix):
    """Normalized response is the sum over detectors for each bin"""
    assert normalize(matrix) == pytest.approx([1.4, 1.8, 1.6, 1.3])


def test_model_dimensions(matrix):
    model = ResponseModel(matrix)
    assert model.num_measurements == 3
    assert model.num_bins == 4
    assert model.detector_names == ["0", "1", "2"]
    assert model.energy_bins is None


def test_model_is_read_only(matrix):
    """The stored matrix cannot be modified through the model"""
    model = ResponseModel(matrix)
    with pytest.raises(ValueError):
        model.matrix[0, 0] = 5.0
    with pytest.raises(ValueError):
        model.normalized[0] = 5.0
    matrix[0, 0] = 5.0
    assert model.matrix[0, 0] == 1.0


def test_transposed_is_a_view(matrix):
    model = ResponseModel(matrix)
    assert np.shares_memory(model.transposed, model.matrix)
    assert model.transposed.shape == (4, 3)


def test_forward_and_back_project(matrix):
    model = ResponseModel(matrix)
    np.testing.assert_allclose(model.forward(np.ones(4)), matrix.sum(axis=1))
    np.testing.assert_allclose(model.back_project(np.ones(3)), matrix.sum(axis=0))


def test_jagged_matrix_rejected():
    with pytest.raises(DimensionError):
        ResponseModel([[1.0, 2.0], [3.0]])


def test_empty_matrix_rejected():
    with pytest.raises(DimensionError):
        ResponseModel(np.zeros((0, 3)))


@pytest.mark.parametrize(
    "bad",
    [
        [[1.0, -0.1], [0.2, 1.0]],
        [[1.0, np.nan], [0.2, 1.0]],
        [[1.0, 0.0], [0.5, 0.0]],
        [[1.0, 0.5], [0.0, 0.0]],
    ],
    ids=["negative", "nan", "zero-column", "zero-row"],
)
def test_invalid_matrix_rejected(bad):
    with pytest.raises(ConfigurationError):
        ResponseModel(bad)


def test_names_must_match_rows(matrix):
    with pytest.raises(DimensionError):
        ResponseModel(matrix, detector_names=["a", "b"])


def test_from_dataframe_with_energy_column(matrix):
    """Response table is (bins x detectors) and gets transposed"""
    df = pd.DataFrame(matrix.T, columns=["0in", "2in", "5in"])
    df.insert(0, "E_MeV", [1e-8, 1e-4, 1.0, 10.0])

    model = ResponseModel.from_dataframe(df)

    assert model.detector_names == ["0in", "2in", "5in"]
    np.testing.assert_array_equal(model.matrix, matrix)
    np.testing.assert_array_equal(model.energy_bins, [1e-8, 1e-4, 1.0, 10.0])


def test_from_dataframe_uses_first_column_as_energy(matrix):
    df = pd.DataFrame(matrix.T, columns=["a", "b", "c"])
    df.insert(0, "energy", [1.0, 2.0, 3.0, 4.0])

    model = ResponseModel.from_dataframe(df, detector_names=["c", "a"])

    assert model.detector_names == ["c", "a"]
    np.testing.assert_array_equal(model.matrix, matrix[[2, 0]])


def test_from_dataframe_unknown_detector(matrix):
    df = pd.DataFrame(matrix.T, columns=["a", "b", "c"])
    df.insert(0, "E_MeV", [1.0, 2.0, 3.0, 4.0])
    with pytest.raises(DimensionError):
        ResponseModel.from_dataframe(df, detector_names=["z"])


class TestMeasurementChecks:
    def test_wrong_length(self, matrix):
        model = ResponseModel(matrix)
        with pytest.raises(DimensionError):
            model.check_measurements([1.0, 2.0])

    def test_negative_measurement(self, matrix):
        model = ResponseModel(matrix)
        with pytest.raises(ConfigurationError):
            model.check_measurements([1.0, -2.0, 3.0])

    def test_zero_measurements_allowed(self, matrix):
        model = ResponseModel(matrix)
        np.testing.assert_array_equal(model.check_measurements([0, 0, 0]), [0, 0, 0])

    def test_spectrum_length(self, matrix):
        model = ResponseModel(matrix)
        with pytest.raises(DimensionError):
            model.check_spectrum(np.ones(5))


def test_as_response_model_passes_models_through(matrix):
    model = ResponseModel(matrix)
    assert as_response_model(model) is model
    assert isinstance(as_response_model(matrix), ResponseModel)
