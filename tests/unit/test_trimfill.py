"""Unit tests for the trim-and-fill iteration, fill phase and orchestration."""

import logging

import numpy as np
import pytest

import importlib

trimfill_module = importlib.import_module("pubbias.bias.trimfill")
from pubbias.bias.trimfill import (
    FILLED_PREFIX,
    K0_SINGLE_STUDY,
    TrimFillIterator,
    fill,
    orient,
    trimfill,
    trimfill_meta,
    trimfill_vectors,
)
from pubbias.core.models import (
    EstimatorType,
    MissingEstimate,
    PoolingModel,
    Side,
    TrimFillOptions,
    TrimFillStatus,
)
from pubbias.core.studyset import StudySet
from pubbias.meta.analyzer import pool


def assert_mirrored(result) -> None:
    """Every imputed study is the reflection of its source across the centre."""
    studies = result.studies
    imputed = np.flatnonzero(studies.imputed)
    assert len(imputed) == len(result.filled_from) == result.k0
    for row, source in zip(imputed, result.filled_from):
        assert studies.effects[row] + studies.effects[source] == pytest.approx(2 * result.center)
        assert studies.ses[row] == studies.ses[source]
        assert studies.labels[row] == FILLED_PREFIX + studies.labels[source]


class TestIterator:
    """Tests for the fixed-point iteration on oriented, sorted effects."""

    def test_converges_on_outlier(self) -> None:
        """The iteration settles on one missing study for a single outlier."""
        effects = np.array([-6.0, -2.5, -2.0, -1.5, -1.0])
        state = TrimFillIterator(TrimFillOptions()).run(effects, np.full(5, 0.3))
        assert state.k0 == 1
        assert state.k0_previous == 1
        assert state.iteration == 2
        assert state.status == TrimFillStatus.CONVERGED
        assert state.center == pytest.approx(-3.0)

    def test_max_iterations_keeps_last_estimate(self) -> None:
        """Hitting the iteration cap keeps the latest estimate."""
        effects = np.array([-6.0, -2.5, -2.0, -1.5, -1.0])
        state = TrimFillIterator(TrimFillOptions(max_iterations=1)).run(effects, np.full(5, 0.3))
        assert state.iteration == 1
        assert state.k0 == 1
        assert state.status == TrimFillStatus.MAX_ITERATIONS
        assert state.center == pytest.approx(-2.6)

    def test_single_study_sentinel(self) -> None:
        """A single study skips the iteration and reports the sentinel."""
        state = TrimFillIterator(TrimFillOptions()).run(np.array([0.4]), np.array([0.1]))
        assert state.k0 == K0_SINGLE_STUDY
        assert state.iteration == 0
        assert state.status == TrimFillStatus.SINGLE_STUDY

    def test_degenerate_estimate_is_clamped(self, monkeypatch) -> None:
        """Estimates above k - 1 are clamped and flagged."""
        def too_many(effects, center, estimator):
            return MissingEstimate(estimator=EstimatorType.L, count=10, statistic=10.0)

        monkeypatch.setattr(trimfill_module, "estimate_missing", too_many)
        state = TrimFillIterator(TrimFillOptions()).run(np.array([0.1, 0.2, 0.3, 0.4]), np.full(4, 0.1))
        assert state.k0 == 3
        assert state.status == TrimFillStatus.DEGENERATE

    def test_random_effects_centre(self) -> None:
        """A random effects centre also gives a bounded estimate."""
        effects = np.array([0.1, 0.15, 0.3, 0.5, 0.8, 1.0])
        ses = np.array([0.05, 0.08, 0.15, 0.2, 0.3, 0.4])
        fixed = TrimFillIterator(TrimFillOptions()).run(effects, ses)
        random = TrimFillIterator(TrimFillOptions(estimation_model=PoolingModel.RANDOM)).run(effects, ses)
        assert fixed.status == TrimFillStatus.CONVERGED
        assert random.status in set(TrimFillStatus)
        assert 0 <= random.k0 <= 5

    def test_verbose_logs_each_iteration(self, caplog) -> None:
        """Verbose runs log every iteration at INFO."""
        caplog.set_level(logging.INFO, logger="pubbias.bias.trimfill")
        effects = np.array([-6.0, -2.5, -2.0, -1.5, -1.0])
        TrimFillIterator(TrimFillOptions(verbose=True)).run(effects, np.full(5, 0.3))
        messages = [r.getMessage() for r in caplog.records]
        assert "n.iter = 1, L0 = 1.11" in messages
        assert "n.iter = 2, L0 = 1.11" in messages


class TestFill:
    """Tests for mirroring and order restoration."""

    def test_no_fill(self) -> None:
        """Without missing studies only the input order is restored."""
        studies = StudySet.from_vectors([0.3, 0.1, 0.2], [0.1, 0.1, 0.1], labels=["c", "a", "b"])
        order = np.argsort(studies.effects, kind="stable")
        augmented, source = fill(studies.take(order), order, 0.2, 0)
        assert augmented.labels == ["c", "a", "b"]
        assert not augmented.imputed.any()
        assert len(source) == 0

    def test_mirrors_largest_effects(self) -> None:
        """The largest effects are mirrored with their SEs and covariates."""
        studies = StudySet.from_vectors([0.9, 0.1, 0.2, 0.5], [0.4, 0.1, 0.1, 0.2], labels=["d", "a", "b", "c"], n=[9, 1, 2, 5])
        order = np.argsort(studies.effects, kind="stable")
        augmented, source = fill(studies.take(order), order, 0.2, 2)
        assert augmented.labels[:4] == ["d", "a", "b", "c"]
        assert augmented.labels[4:] == ["Filled: c", "Filled: d"]
        assert augmented.effects[4:].tolist() == pytest.approx([-0.1, -0.5])
        assert augmented.ses[4:].tolist() == [0.2, 0.4]
        assert augmented.covariates["n"][4:].tolist() == [5, 9]
        assert augmented.imputed.tolist() == [False] * 4 + [True] * 2
        assert source.tolist() == [3, 0]

    def test_orient(self) -> None:
        """Orientation negates effects only for the right side."""
        assert orient(np.array([1.0, -2.0]), Side.LEFT).tolist() == [1.0, -2.0]
        assert orient(np.array([1.0, -2.0]), Side.RIGHT).tolist() == [-1.0, 2.0]


class TestTrimFill:
    """End-to-end tests of trim-and-fill."""

    def test_too_few_studies_returns_none(self, caplog) -> None:
        """Fewer than three studies give no result and a warning."""
        caplog.set_level(logging.WARNING)
        assert trimfill_vectors([0.1, 0.2], [0.1, 0.1]) is None
        assert trimfill_vectors([0.1], [0.1]) is None
        assert any("Minimal number of three studies" in r.getMessage() for r in caplog.records)

    def test_too_few_after_missing_values_returns_none(self) -> None:
        """The minimum is checked after dropping missing values."""
        assert trimfill_vectors([0.1, 0.2, np.nan], [0.1, 0.1, 0.1], side="left") is None

    def test_symmetric_three_studies(self) -> None:
        """Three symmetric studies match a plain meta-analysis."""
        result = trimfill_vectors([-0.1, 0.0, 0.1], [0.2, 0.2, 0.2], side=Side.LEFT)
        plain = pool(StudySet.from_vectors([-0.1, 0.0, 0.1], [0.2, 0.2, 0.2]))
        assert result.k0 == 0
        assert result.status == TrimFillStatus.CONVERGED
        assert result.fixed.effect == pytest.approx(plain.fixed.effect)
        assert result.random.effect == pytest.approx(plain.random.effect)
        assert result.random.se == pytest.approx(plain.random.se)
        assert result.meta.Q == pytest.approx(plain.Q)

    def test_symmetric_equal_errors_without_side(self) -> None:
        """Equal SEs still allow the side to be detected."""
        result = trimfill_vectors([-0.1, 0.0, 0.1], [0.2, 0.2, 0.2])
        plain = pool(StudySet.from_vectors([-0.1, 0.0, 0.1], [0.2, 0.2, 0.2]))
        assert result.k0 == 0
        assert result.status == TrimFillStatus.CONVERGED
        assert result.fixed.effect == pytest.approx(plain.fixed.effect)
        assert result.random.effect == pytest.approx(plain.random.effect)

    def test_equal_errors_outlier_detected_on_left(self, outlier_studies) -> None:
        """With equal SEs a positive mean standardised effect points left."""
        result = trimfill(outlier_studies)
        assert result.side == Side.LEFT
        assert result.k0 == 0

    @pytest.mark.parametrize("estimator", [EstimatorType.L, EstimatorType.R])
    @pytest.mark.parametrize("side", [Side.LEFT, Side.RIGHT])
    def test_symmetric_data_needs_no_filling(self, estimator, side) -> None:
        """Symmetric data need no filling with either estimator or side."""
        effects = [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
        result = trimfill_vectors(effects, [0.5] * 6, side=side, estimator=estimator)
        assert result.k0 == 0
        assert result.studies.effects.tolist() == effects

    def test_outlier_mirrored_to_opposite_side(self, outlier_studies) -> None:
        """A right-side outlier is balanced by mirroring the smallest study."""
        result = trimfill(outlier_studies, side=Side.RIGHT)
        assert result.k0 == 1
        assert result.iterations == 2
        assert result.center == pytest.approx(3.0)
        assert result.filled_from == [0]
        assert result.studies.labels[-1] == "Filled: s1"
        assert result.studies.effects[-1] == pytest.approx(5.0)
        assert result.meta.k == 6
        assert_mirrored(result)

    def test_outlier_left_side_needs_no_filling(self, outlier_studies) -> None:
        """Nothing is missing on the left of a right-side outlier."""
        result = trimfill(outlier_studies, side=Side.LEFT)
        assert result.k0 == 0

    def test_detected_side_and_fill(self, asymmetric_studies) -> None:
        """Egger's test picks the side and small effects are imputed."""
        result = trimfill(asymmetric_studies)
        assert result.side == Side.LEFT
        assert result.k0 == 3
        assert result.status == TrimFillStatus.CONVERGED
        assert result.filled_from == [3, 4, 5]
        imputed = result.studies.effects[result.trimfill]
        assert (imputed < asymmetric_studies.effects.min()).all()
        assert result.random.effect < pool(asymmetric_studies).random.effect
        assert_mirrored(result)

    def test_order_restoration(self, asymmetric_studies) -> None:
        """Observed studies keep their input order, imputed ones come last."""
        shuffled = asymmetric_studies.take([4, 0, 5, 2, 1, 3])
        result = trimfill(shuffled, side=Side.LEFT)
        k = len(shuffled)
        observed = result.studies.take(np.flatnonzero(~result.trimfill))
        assert observed.labels == shuffled.labels
        assert observed.effects.tolist() == shuffled.effects.tolist()
        assert not result.trimfill[:k].any()
        assert result.trimfill[k:].all()

    def test_orientation_invariance(self, asymmetric_studies) -> None:
        """Negating the data and the side negates the result."""
        flipped = asymmetric_studies.with_effects(-asymmetric_studies.effects)
        left = trimfill(asymmetric_studies, side=Side.LEFT)
        right = trimfill(flipped, side=Side.RIGHT)
        assert left.k0 == right.k0
        assert right.center == pytest.approx(-left.center)
        assert right.fixed.effect == pytest.approx(-left.fixed.effect)
        assert right.studies.effects.tolist() == pytest.approx((-left.studies.effects).tolist())

    def test_max_iterations_is_not_fatal(self, outlier_studies) -> None:
        """An iteration cap still returns a filled result."""
        result = trimfill(outlier_studies, side=Side.RIGHT, max_iterations=1)
        assert result.status == TrimFillStatus.MAX_ITERATIONS
        assert result.iterations == 1
        assert result.k0 == 1
        assert result.studies.effects[-1] == pytest.approx(4.2)

    def test_missing_values_dropped_and_counted(self, asymmetric_studies, caplog) -> None:
        """Studies with missing values are dropped and counted."""
        caplog.set_level(logging.WARNING)
        padded = StudySet.from_vectors(
            np.append(np.nan, asymmetric_studies.effects),
            np.append(0.1, asymmetric_studies.ses),
            labels=["missing"] + asymmetric_studies.labels,
        )
        result = trimfill(padded, side=Side.LEFT)
        assert result.n_missing == 1
        assert "missing" not in result.studies.labels
        assert result.k0 == 3
        assert result.filled_from == [4, 5, 6]
        assert any("1 observation(s) dropped" in r.getMessage() for r in caplog.records)

    def test_excluded_studies_reunited(self, asymmetric_studies) -> None:
        """Excluded studies are reported in place but not pooled."""
        effects = np.insert(asymmetric_studies.effects, 2, 3.0)
        ses = np.insert(asymmetric_studies.ses, 2, 0.05)
        labels = asymmetric_studies.labels[:2] + ["X"] + asymmetric_studies.labels[2:]
        exclude = [False, False, True, False, False, False, False]
        result = trimfill_vectors(effects, ses, labels=labels, exclude=exclude, side="left")
        baseline = trimfill(asymmetric_studies, side=Side.LEFT)

        assert result.k0 == baseline.k0 == 3
        assert result.exclude == exclude + [None, None, None]
        assert result.studies.labels[:7] == labels
        assert result.studies.effects[2] == 3.0
        assert result.meta.w_fixed[2] == 0.0
        assert result.meta.k == 9
        assert result.filled_from == [4, 5, 6]
        assert result.fixed.effect == pytest.approx(baseline.fixed.effect)
        assert result.random.effect == pytest.approx(baseline.random.effect)

    def test_no_exclusions_gives_no_mask(self, asymmetric_studies) -> None:
        """Without exclusions no exclusion mask is reported."""
        assert trimfill(asymmetric_studies).exclude is None

    def test_covariates_follow_filled_studies(self) -> None:
        """Imputed studies copy the covariates of their source."""
        studies = StudySet.from_vectors(
            [1.0, 1.5, 2.0, 2.5, 6.0],
            [0.3] * 5,
            n_e=[10, 20, 30, 40, 50],
            n_c=[11, 21, 31, 41, 51],
        )
        result = trimfill(studies, side=Side.RIGHT)
        assert result.studies.covariates["n_e"].tolist() == [10, 20, 30, 40, 50, 10]
        assert result.studies.covariates["n_c"].tolist() == [11, 21, 31, 41, 51, 11]

    def test_options_object_and_overrides(self, asymmetric_studies) -> None:
        """Keyword overrides replace fields of an options object."""
        options = TrimFillOptions(estimator=EstimatorType.R, level=0.9)
        result = trimfill(asymmetric_studies, options, side=Side.LEFT)
        assert result.options.estimator == EstimatorType.R
        assert result.options.side == Side.LEFT
        assert result.meta.level == 0.9
        assert options.side is None

    def test_invalid_override_rejected(self, asymmetric_studies) -> None:
        """Invalid overrides fail validation."""
        with pytest.raises(ValueError):
            trimfill(asymmetric_studies, max_iterations=0)

    def test_input_not_modified(self, asymmetric_studies) -> None:
        """The caller's study set is left unchanged."""
        before = asymmetric_studies.effects.copy()
        trimfill(asymmetric_studies, side=Side.RIGHT)
        assert asymmetric_studies.effects.tolist() == before.tolist()

    def test_trimfill_meta_inherits_settings(self, asymmetric_studies) -> None:
        """Settings of a prior pooling carry over."""
        summary = pool(asymmetric_studies, level=0.9, sm="OR", hakn=True)
        result = trimfill_meta(summary)
        assert result.options.level == 0.9
        assert result.options.sm == "OR"
        assert result.options.hakn is True
        assert result.random.df is not None
        assert result.k0 == trimfill(asymmetric_studies).k0

    def test_trimfill_meta_overrides(self, asymmetric_studies) -> None:
        """Explicit options win over inherited settings."""
        summary = pool(asymmetric_studies, level=0.9)
        result = trimfill_meta(summary, TrimFillOptions(level=0.8), side="right")
        assert result.options.level == 0.8
        assert result.side == Side.RIGHT

    def test_summary_is_serialisable(self, asymmetric_studies) -> None:
        """The summary holds plain values for JSON output."""
        summary = trimfill(asymmetric_studies, prediction=True).summary()
        assert summary["k0"] == 3
        assert summary["k"] == 9
        assert summary["side"] == "left"
        assert summary["prediction"]["lower"] < summary["random"]["effect"]

    def test_summary_omits_prediction_unless_requested(self, asymmetric_studies) -> None:
        """The prediction block is only reported when prediction is on."""
        result = trimfill(asymmetric_studies)
        assert result.meta.se_predict is not None
        assert result.summary()["prediction"] is None


@pytest.mark.parametrize("seed", range(15))
def test_bounded_termination_on_random_data(seed) -> None:
    """Random data always terminate with 0 <= k0 <= k - 1."""
    rng = np.random.RandomState(seed)
    k = rng.randint(3, 15)
    ses = rng.uniform(0.05, 0.5, size=k)
    effects = rng.normal(0.3, 0.3, size=k) + rng.uniform(0, 1.5) * ses
    for estimator in EstimatorType:
        for model in PoolingModel:
            options = TrimFillOptions(side=Side.LEFT, estimator=estimator, estimation_model=model, max_iterations=10)
            result = trimfill_vectors(effects, ses, options=options)
            assert 0 <= result.k0 <= k - 1
            assert 1 <= result.iterations <= 10
            assert len(result.studies) == k + result.k0
            assert_mirrored(result)
