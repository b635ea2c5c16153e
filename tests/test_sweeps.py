import numpy as np
import pandas as pd
import pytest

from nnsunfold import (
    ConfigurationError,
    DimensionError,
    InsufficientDataError,
    MAPSolver,
    MLEMSolver,
    ResponseModel,
    UnfoldingSettings,
)
from nnsunfold.poi import total_dose
from nnsunfold.sweeps import (
    beta_values,
    correction_factor_trend,
    iteration_checkpoints,
    map_poi_surface,
    measurement_trend,
    poi_trajectory,
    run_sweep,
)

RESPONSE = np.array(
    [
        [1.0, 0.5, 0.2, 0.1],
        [0.3, 1.0, 0.6, 0.2],
        [0.1, 0.3, 0.8, 1.0],
    ]
)
ICRP = np.array([10.0, 100.0, 300.0, 400.0])
TOLERANCE = 1e-9


@pytest.fixture
def measurements():
    return RESPONSE @ np.array([2.0, 1.0, 3.0, 0.5])


@pytest.fixture
def model():
    return ResponseModel(
        RESPONSE,
        detector_names=["0", "2", "5"],
        energy_bins=[1e-8, 1e-3, 1.0, 10.0],
    )


class TestCheckpoints:
    def test_iteration_checkpoints(self):
        assert iteration_checkpoints(1000, 5000, 1000).tolist() == [
            1000,
            2000,
            3000,
            4000,
            5000,
        ]

    def test_single_checkpoint(self):
        assert iteration_checkpoints(500, 900, 1000).tolist() == [500]

    @pytest.mark.parametrize("args", [(0, 10, 1), (10, 5, 1), (1, 10, 0)])
    def test_invalid_range(self, args):
        with pytest.raises(ConfigurationError):
            iteration_checkpoints(*args)

    def test_beta_values_span_decades_once(self):
        betas = beta_values(1e-3, 1e-1)
        assert betas.size == 19
        assert betas[0] == pytest.approx(1e-3)
        assert betas[-1] == pytest.approx(1e-1)
        assert betas[9] == pytest.approx(1e-2)
        assert np.all(np.diff(betas) > 0)

    def test_beta_values_need_a_decade(self):
        with pytest.raises(ConfigurationError):
            beta_values(1e-3, 2e-3)


def test_trajectory_matches_fresh_runs(model, measurements):
    """Resuming between checkpoints equals running each count from scratch"""
    checkpoints = [2, 5, 9]
    trajectory = poi_trajectory(
        model, measurements, np.ones(4), checkpoints, "total_fluence", TOLERANCE
    )

    assert trajectory.index.name == "iterations"
    assert trajectory.index.tolist() == checkpoints
    for n in checkpoints:
        fresh = MLEMSolver(model, measurements, np.ones(4)).run(n + 1, TOLERANCE)
        assert trajectory[n] == pytest.approx(fresh.spectrum.sum(), rel=1e-12)


def test_trajectory_dose(model, measurements):
    trajectory = poi_trajectory(
        model,
        measurements,
        np.ones(4),
        [3, 6],
        "total_dose",
        TOLERANCE,
        icrp_factors=ICRP,
        name="beam A",
    )
    fresh = MLEMSolver(model, measurements, np.ones(4)).run(7, TOLERANCE)
    assert trajectory.name == "beam A"
    assert trajectory[6] == pytest.approx(total_dose(fresh.spectrum, ICRP))


def test_trajectory_derivatives(model, measurements):
    values = poi_trajectory(
        model, measurements, np.ones(4), [2, 4, 8], "max_mlem_ratio", TOLERANCE
    )
    derivatives = poi_trajectory(
        model,
        measurements,
        np.ones(4),
        [2, 4, 8],
        "max_mlem_ratio",
        TOLERANCE,
        derivatives=True,
    )
    assert derivatives[2] == pytest.approx((values[4] - values[2]) / 2)
    assert derivatives[4] == pytest.approx((values[8] - values[2]) / 6)


def test_trajectory_reference_poi_needs_reference(model, measurements):
    with pytest.raises(ConfigurationError):
        poi_trajectory(model, measurements, np.ones(4), [1, 2], "nrmsd", TOLERANCE)


def test_trajectory_rejects_energy_correction(model, measurements):
    with pytest.raises(ConfigurationError):
        poi_trajectory(
            model, measurements, np.ones(4), [1, 2], "total_energy_correction", TOLERANCE
        )


@pytest.mark.parametrize("checkpoints", [[], [3, 3], [5, 2], [0, 4]])
def test_invalid_checkpoints(model, measurements, checkpoints):
    with pytest.raises(ConfigurationError):
        poi_trajectory(
            model, measurements, np.ones(4), checkpoints, "total_fluence", TOLERANCE
        )


class TestMapSurface:
    def test_shape_and_fresh_start_per_beta(self, model, measurements):
        betas = [0.0, 1e-3, 1e-2]
        surface = map_poi_surface(
            model,
            measurements,
            np.ones(4),
            [2, 4],
            betas,
            "total_fluence",
            TOLERANCE,
        )

        assert surface.shape == (3, 2)
        assert surface.index.name == "beta"
        assert surface.columns.tolist() == [2, 4]
        fresh = MAPSolver(model, measurements, np.ones(4), beta=1e-2).run(5, TOLERANCE)
        assert surface.loc[1e-2, 4] == pytest.approx(fresh.spectrum.sum())

    def test_energy_correction_of_beta_zero(self, model, measurements):
        surface = map_poi_surface(
            model,
            measurements,
            np.ones(4),
            [1, 3],
            [0.0],
            "total_energy_correction",
            TOLERANCE,
        )
        assert surface.loc[0.0].tolist() == [4.0, 4.0]

    def test_unsupported_poi(self, model, measurements):
        with pytest.raises(ConfigurationError):
            map_poi_surface(
                model, measurements, np.ones(4), [1, 2], [0.1], "j_factor", TOLERANCE
            )

    def test_duplicated_betas_dropped(self, model, measurements):
        with pytest.warns(UserWarning, match="duplicated"):
            surface = map_poi_surface(
                model,
                measurements,
                np.ones(4),
                [1, 2],
                [1e-3, 1e-3, 1e-2],
                "total_fluence",
                TOLERANCE,
            )
        assert surface.index.tolist() == [1e-3, 1e-2]


def test_correction_factor_trend(model, measurements):
    trend = correction_factor_trend(model, measurements, np.ones(4), [1, 3], TOLERANCE)

    assert trend.shape == (2, 4)
    assert trend.columns.name == "E_MeV"
    # first update back-projects the ratio of the flat start
    expected = RESPONSE.T @ (measurements / RESPONSE.sum(axis=1))
    np.testing.assert_allclose(trend.loc[1].values, expected)


def test_correction_factor_trend_without_energies(measurements):
    trend = correction_factor_trend(RESPONSE, measurements, np.ones(4), [1], TOLERANCE)
    assert trend.columns.name == "bin"
    assert trend.columns.tolist() == [0, 1, 2, 3]


class TestMeasurementTrend:
    def test_ratio_trend(self, model, measurements):
        trend = measurement_trend(model, measurements, np.ones(4), [1, 4], TOLERANCE)

        assert trend.index.tolist() == ["measured", 1, 4]
        assert trend.columns.tolist() == ["0", "2", "5"]
        assert trend.loc["measured"].tolist() == [1.0, 1.0, 1.0]
        np.testing.assert_allclose(
            trend.loc[1].values, measurements / RESPONSE.sum(axis=1)
        )

    def test_cps_trend(self, model, measurements):
        trend = measurement_trend(
            model, measurements, np.ones(4), [1, 4], TOLERANCE, trend_type="cps"
        )

        np.testing.assert_allclose(trend.loc["measured"].values, measurements)
        np.testing.assert_allclose(trend.loc[1].values, RESPONSE.sum(axis=1))

    def test_unknown_trend_type(self, model, measurements):
        with pytest.raises(ConfigurationError):
            measurement_trend(
                model, measurements, np.ones(4), [1], TOLERANCE, trend_type="dose"
            )


@pytest.fixture
def update_counter(monkeypatch):
    calls = []
    original = MLEMSolver._update

    def counting_update(self):
        calls.append(1)
        original(self)

    monkeypatch.setattr(MLEMSolver, "_update", counting_update)
    return calls


class TestInputsCheckedBeforeIterating:
    def test_icrp_length(self, model, measurements, update_counter):
        with pytest.raises(DimensionError):
            poi_trajectory(
                model,
                measurements,
                np.ones(4),
                [500, 1000],
                "total_dose",
                TOLERANCE,
                icrp_factors=np.ones(3),
            )
        assert update_counter == []

    def test_reference_length(self, model, measurements, update_counter):
        with pytest.raises(DimensionError):
            poi_trajectory(
                model,
                measurements,
                np.ones(4),
                [5, 10],
                "rms",
                TOLERANCE,
                reference_spectrum=np.ones(5),
            )
        assert update_counter == []

    def test_missing_icrp_factors(self, model, measurements, update_counter):
        with pytest.raises(ConfigurationError):
            poi_trajectory(model, measurements, np.ones(4), [5], "total_dose", TOLERANCE)
        assert update_counter == []

    def test_derivatives_need_two_checkpoints(self, model, measurements, update_counter):
        with pytest.raises(InsufficientDataError):
            poi_trajectory(
                model,
                measurements,
                np.ones(4),
                [5],
                "total_fluence",
                TOLERANCE,
                derivatives=True,
            )
        assert update_counter == []

    def test_map_surface_icrp_length(self, model, measurements, update_counter):
        with pytest.raises(DimensionError):
            map_poi_surface(
                model,
                measurements,
                np.ones(4),
                [5, 10],
                [0.0, 1e-3],
                "total_dose",
                TOLERANCE,
                icrp_factors=np.ones(3),
            )
        assert update_counter == []


class TestRunSweep:
    @pytest.fixture
    def settings(self):
        return UnfoldingSettings(
            error_tolerance=TOLERANCE,
            min_num_iterations=2,
            max_num_iterations=6,
            iteration_increment=2,
        )

    def test_mlem(self, settings, model, measurements):
        result = run_sweep(
            settings.updated(parameter_of_interest="total_dose"),
            model,
            measurements,
            np.ones(4),
            icrp_factors=ICRP,
            name="beam A",
        )
        expected = poi_trajectory(
            model,
            measurements,
            np.ones(4),
            [2, 4, 6],
            "total_dose",
            TOLERANCE,
            icrp_factors=ICRP,
        )
        assert isinstance(result, pd.Series)
        assert result.name == "beam A"
        np.testing.assert_allclose(result.values, expected.values)

    def test_mlem_derivatives(self, settings, model, measurements):
        values = run_sweep(settings, model, measurements, np.ones(4))
        derivatives = run_sweep(
            settings.updated(derivatives=True), model, measurements, np.ones(4)
        )
        assert derivatives[2] == pytest.approx((values[4] - values[2]) / 2)

    def test_map(self, settings, model, measurements):
        result = run_sweep(
            settings.updated(algorithm="map", min_beta=1e-3, max_beta=1e-2, prior="entropy"),
            model,
            measurements,
            np.ones(4),
        )
        assert isinstance(result, pd.DataFrame)
        assert result.shape == (10, 3)
        assert result.index[0] == pytest.approx(1e-3)
        fresh = MAPSolver(
            model, measurements, np.ones(4), beta=result.index[0], prior="entropy"
        ).run(7, TOLERANCE)
        assert result.iloc[0, -1] == pytest.approx(fresh.spectrum.sum())

    def test_trend(self, settings, model, measurements):
        result = run_sweep(
            settings.updated(algorithm="trend", trend_type="cps"),
            model,
            measurements,
            np.ones(4),
        )
        assert result.index.tolist() == ["measured", 2, 4, 6]
        np.testing.assert_allclose(result.loc["measured"].values, measurements)

    def test_correction_factors(self, settings, model, measurements):
        result = run_sweep(
            settings.updated(algorithm="correction_factors"),
            model,
            measurements,
            np.ones(4),
        )
        assert result.index.tolist() == [2, 4, 6]
        assert result.columns.name == "E_MeV"

    def test_invalid_settings(self, model, measurements):
        settings = UnfoldingSettings(algorithm="gravel")
        with pytest.raises(ConfigurationError):
            run_sweep(settings, model, measurements, np.ones(4))
