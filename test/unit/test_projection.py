"""
Unit tests for the projection (beat sequence correction) algorithm.

The projector is exercised directly on beat times and waveform windows so
that each scenario controls exactly which beats look like the template and
which intervals are suspicious. True beats share the template shape; spurious
beats carry random waveforms.
"""
from __future__ import annotations

import numpy as np
import pytest

from analysis.metrics import max_xcorr
from analysis.settings import ProcessingParameters
from core.projection import (
    SEED_FAILURE,
    ProjectionContext,
    expected_interval,
    finalize_beats,
    pick_best_candidate,
    project,
    project_bidirectional,
    seed_mask,
    sequence_score,
    suspicious_intervals,
)
from test.fixtures.signal_generators import beat_shapes

RATE = 1000.0
WIDTH = 31


def make_context(**overrides) -> ProjectionContext:
    template = beat_shapes(1, WIDTH)[0]
    params = ProcessingParameters(**overrides)
    return ProjectionContext.from_parameters(params, RATE, template, max_xcorr(template, template))


def regular_train(n: int = 30, interval: float = 0.1, start: float = 0.2) -> np.ndarray:
    return np.round(start + interval * np.arange(n), 9)


def noise_shapes(n: int, seed: int) -> np.ndarray:
    return np.random.default_rng(seed).normal(0.0, 1.0, size=(n, WIDTH))


def with_spurious(beats: np.ndarray, index: int, delay: float, seed: int = 1):
    """Insert a random-shaped beat ``delay`` seconds after ``beats[index]``."""
    shapes = beat_shapes(beats.size, WIDTH)
    spurious_time = beats[index] + delay
    times = np.insert(beats, index + 1, spurious_time)
    shapes = np.insert(shapes, index + 1, noise_shapes(1, seed)[0], axis=0)
    return times, shapes, spurious_time


class TestContext:
    def test_derived_quantities(self) -> None:
        ctx = make_context()
        assert ctx.shortest_interval == pytest.approx(1 / 15)
        assert ctx.longest_interval == pytest.approx(1 / 8)
        assert ctx.outlier_samples == pytest.approx(30.0)
        assert ctx.stable_samples == pytest.approx(5.0)
        assert ctx.width == WIDTH

    def test_template_correlates_to_one(self) -> None:
        ctx = make_context()
        assert ctx.correlation(ctx.template) == pytest.approx(1.0)

    def test_reversed_template(self) -> None:
        ctx = make_context()
        np.testing.assert_array_equal(ctx.reversed().template, ctx.template[::-1])

    def test_template_is_read_only(self) -> None:
        ctx = make_context()
        with pytest.raises(ValueError):
            ctx.template[0] = 1.0


class TestScoringPrimitives:
    def test_suspicious_intervals(self) -> None:
        ctx = make_context()
        beats = np.array([0.0, 0.1, 0.13, 0.2, 0.3, 0.5])
        np.testing.assert_array_equal(suspicious_intervals(beats, ctx), [1, 4])

    def test_expected_interval_regular(self) -> None:
        assert expected_interval([0, 100, 200, 300], 30.0) == 100.0

    def test_expected_interval_drops_outlier(self) -> None:
        # Intervals 100, 100, 160: only the consistent pair is averaged.
        assert expected_interval([0, 100, 200, 360], 30.0) == 100.0

    def test_expected_interval_without_consistent_pair(self) -> None:
        # Intervals 50, 100, 200 all differ by more than the outlier gate.
        assert expected_interval([0, 50, 150, 350], 30.0) == 120.0

    def test_pick_best_candidate_highest_score(self) -> None:
        assert pick_best_candidate([0.2, 0.9, 0.5], [15, 15, 15], 15) == 1

    def test_pick_best_candidate_tie_goes_to_template_apex(self) -> None:
        # Equal scores: the candidate whose apex sits at the template apex wins.
        assert pick_best_candidate([0.8, 0.8], [12, 15], 15) == 1
        assert pick_best_candidate([0.8, 0.8], [15, 19], 15) == 0

    def test_pick_best_candidate_full_tie_is_earliest(self) -> None:
        assert pick_best_candidate([0.5, 0.5], [13, 17], 15) == 0

    def test_sequence_score_perfect_train(self) -> None:
        ctx = make_context()
        beats = regular_train(8)
        assert sequence_score(beats, beat_shapes(8, WIDTH), ctx) == pytest.approx(1.0)

    def test_sequence_score_too_short(self) -> None:
        ctx = make_context()
        assert sequence_score(regular_train(3), beat_shapes(3, WIDTH), ctx) is None


class TestSeedMask:
    def test_regular_train_is_seedable(self) -> None:
        ctx = make_context()
        mask = seed_mask(regular_train(), beat_shapes(30, WIDTH), ctx)
        assert mask.all()

    def test_poor_correlation_blocks_seeds(self) -> None:
        ctx = make_context()
        mask = seed_mask(regular_train(), noise_shapes(30, seed=3), ctx)
        assert not mask.any()

    def test_abnormal_neighbour_interval_blocks_seed(self) -> None:
        ctx = make_context()
        beats, shapes, _ = with_spurious(regular_train(), 10, 0.03)
        mask = seed_mask(beats, shapes, ctx)
        # Beats on either side of the 30 ms interval are not trusted.
        assert not mask[10] and not mask[11]
        assert mask[5]


class TestProjectForward:
    """Forward walk on single suspicious stretches."""

    def test_regular_train_unchanged(self) -> None:
        ctx = make_context()
        beats = regular_train()
        result = project(beats, beat_shapes(beats.size, WIDTH), ctx)
        np.testing.assert_array_equal(result.beats, beats)
        assert result.ok

    def test_spurious_beat_removed(self) -> None:
        ctx = make_context()
        true_beats = regular_train()
        beats, shapes, spurious = with_spurious(true_beats, 10, 0.03)
        result = project(beats, shapes, ctx)
        assert spurious not in result.beats
        np.testing.assert_allclose(result.beats, true_beats)
        assert result.shapes.shape == (true_beats.size, WIDTH)

    def test_inputs_not_modified(self) -> None:
        ctx = make_context()
        beats, shapes, _ = with_spurious(regular_train(), 10, 0.03)
        before_beats, before_shapes = beats.copy(), shapes.copy()
        project(beats, shapes, ctx)
        np.testing.assert_array_equal(beats, before_beats)
        np.testing.assert_array_equal(shapes, before_shapes)

    def test_missed_beat_not_invented(self) -> None:
        ctx = make_context()
        beats = np.delete(regular_train(), 15)
        result = project(beats, beat_shapes(beats.size, WIDTH), ctx)
        np.testing.assert_array_equal(result.beats, beats)

    @pytest.mark.parametrize("shifted_first", [False, True])
    def test_equal_scores_keep_candidate_at_template_apex(self, shifted_first) -> None:
        x = np.arange(WIDTH) - WIDTH // 2
        template = np.where(np.abs(x) <= 8, np.exp(-0.5 * (x / 2.0) ** 2), 0.0)
        ctx = ProjectionContext.from_parameters(ProcessingParameters(), RATE, template, max_xcorr(template, template))
        centred, shifted = template, np.roll(template, 3)
        assert ctx.correlation(shifted) == pytest.approx(ctx.correlation(centred), abs=1e-12)

        true_beats = regular_train()
        early, late = true_beats[11] - 0.005, true_beats[11] + 0.005
        beats = np.concatenate([true_beats[:11], [early, late], true_beats[12:]])
        shapes = np.tile(template, (beats.size, 1))
        shapes[11], shapes[12] = (shifted, centred) if shifted_first else (centred, shifted)

        result = project(beats, shapes, ctx)
        kept = late if shifted_first else early
        np.testing.assert_allclose(result.beats, np.concatenate([true_beats[:11], [kept], true_beats[12:]]))

    def test_missed_beat_stops_forward_walk(self) -> None:
        ctx = make_context()
        true_beats = np.delete(regular_train(), 15)
        # Spurious beat right after the missed one: the forward walk halts at the gap.
        beats, shapes, spurious = with_spurious(true_beats, 15, 0.03)
        forward = project(beats, shapes, ctx)
        assert spurious in forward.beats
        np.testing.assert_array_equal(forward.beats[:15], true_beats[:15])

        result = project_bidirectional(beats, shapes, ctx)
        assert spurious not in result.beats
        np.testing.assert_allclose(result.beats, true_beats)

    def test_early_span_left_for_backward_pass(self) -> None:
        ctx = make_context()
        beats, shapes, spurious = with_spurious(regular_train(), 2, 0.03)
        forward = project(beats, shapes, ctx)
        assert spurious in forward.beats

    def test_seed_failure_is_reported_not_raised(self) -> None:
        ctx = make_context()
        beats, _, _ = with_spurious(regular_train(), 10, 0.03)
        shapes = noise_shapes(beats.size, seed=7)
        result = project(beats, shapes, ctx)
        assert result.failure == SEED_FAILURE
        assert not result.ok
        np.testing.assert_array_equal(result.beats, beats)
        assert result.unresolved == (pytest.approx(beats[10]),)

    def test_watermark_blocks_seeds(self) -> None:
        ctx = make_context()
        beats, shapes, spurious = with_spurious(regular_train(), 10, 0.03)
        result = project(beats, shapes, ctx, watermark=float(beats[10]))
        assert spurious in result.beats
        assert result.unresolved == (pytest.approx(beats[10]),)

    def test_too_few_beats(self) -> None:
        ctx = make_context()
        beats = np.array([0.1, 0.12, 0.3])
        result = project(beats, beat_shapes(3, WIDTH), ctx)
        np.testing.assert_array_equal(result.beats, beats)


class TestProjectBidirectional:
    def test_backward_pass_resolves_early_span(self) -> None:
        ctx = make_context()
        true_beats = regular_train()
        beats, shapes, spurious = with_spurious(true_beats, 2, 0.03)
        result = project_bidirectional(beats, shapes, ctx)
        assert spurious not in result.beats
        np.testing.assert_allclose(result.beats, true_beats)

    def test_both_ends(self) -> None:
        ctx = make_context()
        true_beats = regular_train(40)
        beats, shapes, _ = with_spurious(true_beats, 2, 0.03, seed=2)
        index = int(np.searchsorted(beats, true_beats[30]))
        times = np.insert(beats, index + 1, beats[index] + 0.03)
        shapes = np.insert(shapes, index + 1, noise_shapes(1, seed=4)[0], axis=0)
        result = project_bidirectional(times, shapes, ctx)
        np.testing.assert_allclose(result.beats, true_beats)

    def test_result_strictly_increasing(self) -> None:
        ctx = make_context()
        beats, shapes, _ = with_spurious(regular_train(), 12, 0.04)
        result = project_bidirectional(beats, shapes, ctx)
        assert np.all(np.diff(result.beats) > 0)


class TestFinalize:
    def test_rounds_sorts_and_deduplicates(self) -> None:
        beats = np.array([0.3, 0.1000000001, 0.1, 0.2])
        np.testing.assert_array_equal(finalize_beats(beats), [0.1, 0.2, 0.3])
