"""
Unit tests for processing parameters: validation, presets, persistence
format migration, the validating store and stage gating.
"""
from __future__ import annotations

from dataclasses import replace

import pytest

from analysis.settings import (
    PARAMETERS_SCHEMA_VERSION,
    SPECIES_PRESETS,
    ParametersStore,
    ProcessingParameters,
    parameters_from_dict,
    parameters_to_dict,
    stages_to_rerun,
    threshold_only_change,
)
from shared.errors import ConfigurationError, SessionFormatError


class TestValidation:
    def test_defaults_are_valid(self) -> None:
        ProcessingParameters().validate(1000.0)

    @pytest.mark.parametrize(
        "changes",
        [
            {"bp_low": 200.0},
            {"power": 0.0},
            {"power": 12.0},
            {"threshold": -1.0},
            {"waveform_window_low": 15},
            {"peak_range": -1},
            {"suspicious_frequency_low": 20.0},
            {"pass_number": 0},
            {"sliding_window_size": float("nan")},
            {"unit": "rpm"},
        ],
    )
    def test_rejects(self, changes) -> None:
        with pytest.raises(ConfigurationError):
            replace(ProcessingParameters(), **changes).validate()

    def test_bp_high_checked_against_nyquist(self) -> None:
        params = ProcessingParameters(bp_high=600.0)
        params.validate()
        with pytest.raises(ConfigurationError):
            params.validate(1000.0)

    def test_bp_high_ignored_when_filter_disabled(self) -> None:
        ProcessingParameters(bp_enable=False, bp_high=600.0).validate(1000.0)

    def test_notch_band_inside_nyquist(self) -> None:
        with pytest.raises(ConfigurationError):
            ProcessingParameters(notch_filter=True, power_grid=498.0, bp_enable=False).validate(1000.0)

    def test_configuration_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            ProcessingParameters(pass_number=0).validate()


class TestPresets:
    def test_species_presets(self) -> None:
        assert ProcessingParameters.for_species("Mouse") == ProcessingParameters()
        human = ProcessingParameters.for_species("Human")
        assert human.species == "Human"
        assert human.window_width == 401
        human.validate(1000.0)

    def test_unknown_species(self) -> None:
        with pytest.raises(ConfigurationError):
            ProcessingParameters.for_species("Zebrafish")

    def test_window_width(self) -> None:
        assert ProcessingParameters().window_width == 31


class TestPersistence:
    def test_round_trip(self) -> None:
        params = ProcessingParameters(threshold=2.5e-3, pass_number=3, notch_filter=True)
        payload = parameters_to_dict(params)
        assert payload["version"] == PARAMETERS_SCHEMA_VERSION
        assert parameters_from_dict(payload) == params

    def test_missing_fields_from_species_preset(self) -> None:
        params = parameters_from_dict({"version": 2, "species": "Human", "threshold": 5.0})
        assert params.outlier == SPECIES_PRESETS["Human"].outlier
        assert params.threshold == 5.0

    def test_missing_fields_from_base(self) -> None:
        base = ProcessingParameters(outlier=40.0)
        params = parameters_from_dict({"version": 2, "threshold": 5.0}, base=base)
        assert params.outlier == 40.0

    def test_unknown_keys_ignored(self) -> None:
        params = parameters_from_dict({"version": 2, "colour": "red", "pass_number": 4})
        assert params.pass_number == 4

    def test_uncoercible_value_keeps_default(self) -> None:
        params = parameters_from_dict({"version": 2, "outlier": "wide"})
        assert params.outlier == ProcessingParameters().outlier

    def test_coercion(self) -> None:
        params = parameters_from_dict({"version": 2, "pass_number": "3", "bp_low": 50, "notch_filter": 1})
        assert params.pass_number == 3
        assert isinstance(params.bp_low, float)
        assert params.notch_filter is True

    def test_boolean_strings(self) -> None:
        params = parameters_from_dict(
            {"version": 2, "notch_filter": "false", "bp_enable": "False", "de_drift_enable": "yes"}
        )
        assert params.notch_filter is False
        assert params.bp_enable is False
        assert params.de_drift_enable is True

    def test_unreadable_boolean_keeps_default(self) -> None:
        base = ProcessingParameters(notch_filter=True)
        assert parameters_from_dict({"version": 2, "notch_filter": "maybe"}, base=base).notch_filter is True
        assert parameters_from_dict({"version": 2, "notch_filter": 7}, base=base).notch_filter is True

    def test_legacy_v1_names(self) -> None:
        payload = {
            "ProcessingSamplingRate": 2000,
            "Threshold": 7.0,
            "RPeakRange": 6,
            "SmoothKernel": 1000,
            "PassNumber": 1,
        }
        params = parameters_from_dict(payload)
        assert params.processing_sampling_rate == 2000.0
        assert params.threshold == 7.0
        assert params.peak_range == 6
        assert params.pass_number == 1
        # Kernel stored in samples at the processing rate becomes seconds.
        assert params.de_drift_kernel == pytest.approx(0.5)

    def test_newer_version_rejected(self) -> None:
        with pytest.raises(SessionFormatError):
            parameters_from_dict({"version": PARAMETERS_SCHEMA_VERSION + 1})

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(SessionFormatError):
            parameters_from_dict(["threshold", 1.0])  # type: ignore[arg-type]

    def test_invalid_values_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            parameters_from_dict({"version": 2, "bp_low": 500.0})


class TestParametersStore:
    def test_update_commits_valid_edit(self) -> None:
        store = ParametersStore()
        store.update(threshold=3.0)
        assert store.get().threshold == 3.0

    def test_rejected_edit_keeps_previous(self) -> None:
        store = ParametersStore(sample_rate=1000.0)
        before = store.get()
        with pytest.raises(ConfigurationError):
            store.update(bp_high=600.0)
        assert store.get() is before

    def test_unknown_field_rejected(self) -> None:
        store = ParametersStore()
        with pytest.raises(ConfigurationError):
            store.update(gain=2.0)

    def test_invalid_initial_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            ParametersStore(ProcessingParameters(pass_number=0))

    def test_subscribers_notified(self) -> None:
        store = ParametersStore()
        seen = []
        unsubscribe = store.subscribe(seen.append)
        store.update(pass_number=3)
        unsubscribe()
        store.update(pass_number=4)
        assert [p.pass_number for p in seen] == [2, 3]

    def test_failing_subscriber_does_not_undo_edit(self) -> None:
        store = ParametersStore()

        def broken(_params) -> None:
            raise RuntimeError("boom")

        store.subscribe(broken, replay=False)
        store.update(threshold=2.0)
        assert store.get().threshold == 2.0


class TestStageGating:
    def test_nothing_computed_reruns_everything(self) -> None:
        assert stages_to_rerun(None, ProcessingParameters()) == {"preprocess", "detect", "project", "rate"}

    def test_unchanged_reruns_nothing(self) -> None:
        assert stages_to_rerun(ProcessingParameters(), ProcessingParameters()) == frozenset()

    def test_upstream_change_marks_downstream(self) -> None:
        previous = ProcessingParameters()
        assert stages_to_rerun(previous, replace(previous, bp_low=50.0)) == {
            "preprocess",
            "detect",
            "project",
            "rate",
        }
        assert stages_to_rerun(previous, replace(previous, outlier=40.0)) == {"project", "rate"}
        assert stages_to_rerun(previous, replace(previous, sliding_window_size=2.0)) == {"rate"}

    def test_unit_change_needs_no_rerun(self) -> None:
        previous = ProcessingParameters()
        assert stages_to_rerun(previous, replace(previous, unit="Hz")) == frozenset()

    def test_threshold_only_change(self) -> None:
        previous = ProcessingParameters()
        assert threshold_only_change(previous, replace(previous, threshold=1.0))
        assert threshold_only_change(previous, replace(previous, threshold=1.0, outlier=40.0))
        assert not threshold_only_change(previous, replace(previous, threshold=1.0, power=2.0))
        assert not threshold_only_change(previous, replace(previous, power=2.0))
        assert not threshold_only_change(None, previous)
