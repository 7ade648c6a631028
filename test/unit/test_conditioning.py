"""
Unit tests for signal conditioning (filters, decimation, artefact masking).

These tests verify that the preprocessing chain produces quantitatively
correct results on synthetic inputs with known properties:
1. Band-pass and notch filters attenuate what they should and keep the rest
2. Drift removal takes out DC and slow wander
3. Artefact masking flags exactly the injected interval (plus padding)
4. Raw-rate apex relocation lands on the true raw sample

Incorrect conditioning shows up downstream as missed beats (true beats
filtered away) or spurious beats (artefacts left in the envelope).
"""
from __future__ import annotations

import numpy as np
import pytest

from analysis.settings import ProcessingParameters
from core.conditioning import (
    ConditioningSettings,
    SignalConditioner,
    decimate,
    decimation_factor,
    detect_artefacts,
    locate_raw_beat_peaks,
    preprocess,
)
from shared.errors import ConfigurationError
from test.fixtures.signal_generators import (
    make_beat_train,
    make_dc_with_drift,
    make_mains_hum,
    make_sine,
    make_square_artefact,
)

RATE = 1000.0


def rms(x: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.square(x))))


def middle(x: np.ndarray, fraction: float = 0.2) -> np.ndarray:
    """Drop ``fraction`` of samples at each end to avoid filter edge effects."""
    n = int(len(x) * fraction)
    return x[n : len(x) - n]


def raw_params(**overrides) -> ProcessingParameters:
    base = dict(de_drift_enable=False, bp_enable=False, notch_filter=False, auto_artefacts_removal=False)
    base.update(overrides)
    return ProcessingParameters(**base)


class TestFilters:
    """Frequency response of the conditioning chain."""

    def test_bandpass_rejects_low_frequency(self) -> None:
        conditioner = SignalConditioner(ConditioningSettings(de_drift_enable=False))
        out = conditioner.process(make_sine(5.0, 1.0, 4.0, RATE), RATE)
        assert rms(middle(out)) < 0.01

    def test_bandpass_keeps_passband(self) -> None:
        conditioner = SignalConditioner(ConditioningSettings(de_drift_enable=False))
        sine = make_sine(100.0, 1.0, 4.0, RATE)
        out = conditioner.process(sine, RATE)
        assert rms(middle(out)) / rms(middle(sine)) > 0.9

    def test_notch_removes_mains(self) -> None:
        settings = ConditioningSettings(de_drift_enable=False, bp_enable=False, notch_enabled=True)
        out = SignalConditioner(settings).process(make_sine(50.0, 1.0, 4.0, RATE), RATE)
        assert rms(middle(out)) < 0.05

    def test_notch_leaves_harmonics(self) -> None:
        settings = ConditioningSettings(de_drift_enable=False, bp_enable=False, notch_enabled=True)
        hum = make_mains_hum(50.0, 1.0, 4.0, RATE)
        harmonics = hum - make_sine(50.0, 1.0, 4.0, RATE)
        out = SignalConditioner(settings).process(hum, RATE)
        assert rms(middle(out - harmonics)) < 0.05

    def test_notch_keeps_other_frequencies(self) -> None:
        settings = ConditioningSettings(de_drift_enable=False, bp_enable=False, notch_enabled=True)
        sine = make_sine(20.0, 1.0, 4.0, RATE)
        out = SignalConditioner(settings).process(sine, RATE)
        assert rms(middle(out)) / rms(middle(sine)) > 0.9

    def test_drift_removal_centres_signal(self) -> None:
        settings = ConditioningSettings(bp_enable=False)
        drift = make_dc_with_drift(5.0, 0.5, 0.1, 10.0, RATE)
        out = SignalConditioner(settings).process(drift, RATE)
        assert abs(float(np.mean(middle(out)))) < 0.05

    def test_disabled_chain_is_identity(self) -> None:
        settings = ConditioningSettings(de_drift_enable=False, bp_enable=False)
        sine = make_sine(3.0, 2.0, 1.0, RATE)
        out = SignalConditioner(settings).process(sine, RATE)
        np.testing.assert_array_equal(out, sine)
        assert out is not sine

    def test_cutoff_above_nyquist_rejected(self) -> None:
        settings = ConditioningSettings(bp_high_hz=600.0)
        with pytest.raises(ConfigurationError):
            settings.validate(RATE)


class TestDecimation:
    def test_factor(self) -> None:
        assert decimation_factor(1000.0, 1000.0) == 1
        assert decimation_factor(500.0, 1000.0) == 1
        assert decimation_factor(4000.0, 1000.0) == 4
        assert decimation_factor(2500.0, 1000.0) == 3

    def test_decimate_keeps_time_alignment(self) -> None:
        raw_rate = 4000.0
        values = make_sine(10.0, 1.0, 2.0, raw_rate)
        times = np.arange(values.size) / raw_rate
        data, stamps = decimate(values, times, 4)
        assert data.size == stamps.size == 2000
        np.testing.assert_allclose(np.diff(stamps), 1.0 / 1000.0)
        expected = np.sin(2.0 * np.pi * 10.0 * stamps)
        np.testing.assert_allclose(middle(data), middle(expected), atol=0.02)

    def test_preprocess_reports_processing_rate(self) -> None:
        raw_rate = 4000.0
        values = make_sine(10.0, 1.0, 2.0, raw_rate)
        conditioned = preprocess(values, raw_rate, raw_params())
        assert conditioned.sample_rate == pytest.approx(1000.0)
        assert conditioned.decimation == 4
        assert conditioned.times[0] == 0.0


class TestArtefactMasking:
    """A 100x square pulse over a sine baseline must be masked with 50 ms padding."""

    DURATION = 10.0

    def make_signal(self) -> np.ndarray:
        baseline = make_sine(10.0, 1.0, self.DURATION, RATE)
        return baseline + make_square_artefact(2.0, 2.5, 100.0, self.DURATION, RATE)

    def test_artefact_span_detected(self) -> None:
        conditioned = preprocess(self.make_signal(), RATE, raw_params(auto_artefacts_removal=True))
        assert len(conditioned.artefacts) == 1
        span = conditioned.artefacts[0]
        assert span.start == pytest.approx(1.95, abs=0.005)
        assert span.end == pytest.approx(2.55, abs=0.005)

    def test_rest_of_signal_untouched(self) -> None:
        raw = self.make_signal()
        conditioned = preprocess(raw, RATE, raw_params(auto_artefacts_removal=True))
        valid = conditioned.valid
        assert np.sum(~valid) == pytest.approx(600, abs=10)
        np.testing.assert_array_equal(conditioned.values[valid], raw[valid])

    def test_masked_samples_are_explicit(self) -> None:
        conditioned = preprocess(self.make_signal(), RATE, raw_params(auto_artefacts_removal=True))
        assert np.all(conditioned.values[~conditioned.valid] == 0.0)
        masked = conditioned.masked()
        assert np.all(np.isnan(masked[~conditioned.valid]))
        assert not np.any(np.isnan(masked[conditioned.valid]))

    def test_clean_signal_has_no_artefacts(self) -> None:
        spans = detect_artefacts(make_sine(10.0, 1.0, self.DURATION, RATE), RATE, 4.0)
        assert spans == []

    def test_masking_disabled(self) -> None:
        conditioned = preprocess(self.make_signal(), RATE, raw_params())
        assert conditioned.artefacts == ()
        assert np.all(conditioned.valid)


class TestPreprocessErrors:
    def test_bp_high_above_processing_nyquist(self) -> None:
        values = make_sine(10.0, 1.0, 2.0, 300.0)
        with pytest.raises(ConfigurationError):
            preprocess(values, 300.0, ProcessingParameters())


class TestRawBeatPeaks:
    """Apex relocation at the raw sampling rate."""

    RAW_RATE = 4000.0

    def test_apex_recovered_from_offset_estimate(self) -> None:
        true_times = np.array([0.25, 0.35, 0.45, 0.55])
        values = make_beat_train(true_times, 1.0, self.RAW_RATE)
        times = np.arange(values.size) / self.RAW_RATE
        approximate = true_times + 3.0 / self.RAW_RATE
        peak_times, peak_values = locate_raw_beat_peaks(
            values, times, self.RAW_RATE, 1000.0, approximate, raw_params()
        )
        np.testing.assert_allclose(peak_times, true_times, atol=1e-9)
        np.testing.assert_allclose(peak_values, values.max(), rtol=1e-9)

    def test_empty_beats(self) -> None:
        values = make_sine(10.0, 1.0, 1.0, self.RAW_RATE)
        times = np.arange(values.size) / self.RAW_RATE
        peak_times, peak_values = locate_raw_beat_peaks(
            values, times, self.RAW_RATE, 1000.0, np.zeros(0), raw_params()
        )
        assert peak_times.size == 0 and peak_values.size == 0
