"""
Property-based configuration fuzzing tests.

These tests use Hypothesis to generate random, potentially invalid
configuration values and verify the system handles them gracefully:
1. Invalid values are rejected with ConfigurationError (not crashes)
2. Stored parameter documents of any shape either load or raise
   SessionFormatError / ConfigurationError
3. A rejected store edit never replaces the committed snapshot

High-ROI fuzzing targets:
- Sample rate (zero, negative, NaN, huge values)
- Filter cutoffs (above Nyquist, inverted band)
- Persisted documents with wrong types in every field
"""
from __future__ import annotations

from dataclasses import fields

import pytest
from hypothesis import given, settings, strategies as st

from analysis.settings import ParametersStore, ProcessingParameters, parameters_from_dict
from core.conditioning import ConditioningSettings
from shared.errors import ConfigurationError, SessionFormatError


weird_floats = st.sampled_from([0.0, -0.0, -1.0, float("nan"), float("inf"), float("-inf"), 1e-300, 1e300])
field_names = st.sampled_from([f.name for f in fields(ProcessingParameters)])
field_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-10**6, max_value=10**6),
    st.floats(allow_nan=True, allow_infinity=True),
    st.text(max_size=8),
)


class TestSampleRateValidation:
    """Fuzzing the sample rate handed to filter validation."""

    @given(sample_rate=st.one_of(st.floats(max_value=0.0), weird_floats))
    @settings(max_examples=50, deadline=None)
    def test_non_positive_or_non_finite_rate_rejected(self, sample_rate: float):
        if sample_rate > 0 and sample_rate < float("inf"):
            return
        with pytest.raises(ConfigurationError):
            ProcessingParameters().validate(sample_rate)
        with pytest.raises(ConfigurationError):
            ConditioningSettings().validate(sample_rate)

    @given(sample_rate=st.floats(min_value=362.0, max_value=1e6))
    @settings(max_examples=50, deadline=None)
    def test_rates_above_twice_bp_high_accepted(self, sample_rate: float):
        ProcessingParameters().validate(sample_rate)
        ConditioningSettings().validate(sample_rate)


class TestFilterCutoffs:
    @given(bp_high=st.floats(min_value=500.0, max_value=1e6))
    @settings(max_examples=50, deadline=None)
    def test_bp_high_at_or_above_nyquist_rejected(self, bp_high: float):
        with pytest.raises(ConfigurationError):
            ProcessingParameters(bp_high=bp_high).validate(1000.0)

    @given(low=st.floats(min_value=1.0, max_value=400.0), high=st.floats(min_value=1.0, max_value=400.0))
    @settings(max_examples=50, deadline=None)
    def test_band_order_enforced(self, low: float, high: float):
        params = ProcessingParameters(bp_low=low, bp_high=high)
        if low < high:
            params.validate(1000.0)
        else:
            with pytest.raises(ConfigurationError):
                params.validate(1000.0)


class TestParameterDocuments:
    """Persisted parameter documents with arbitrary field values."""

    @given(payload=st.dictionaries(field_names, field_values, max_size=8))
    @settings(max_examples=100, deadline=None)
    def test_any_document_loads_or_raises_cleanly(self, payload):
        document = dict(payload, version=2)
        try:
            params = parameters_from_dict(document)
        except (ConfigurationError, SessionFormatError):
            return
        params.validate()

    @given(version=st.one_of(st.text(max_size=4), st.none(), st.lists(st.integers(), max_size=2)))
    @settings(max_examples=50, deadline=None)
    def test_bad_version_field(self, version):
        try:
            parameters_from_dict({"version": version})
        except (ConfigurationError, SessionFormatError):
            pass


class TestStoreRejection:
    @given(name=field_names, value=weird_floats)
    @settings(max_examples=100, deadline=None)
    def test_rejected_edit_keeps_snapshot(self, name: str, value: float):
        store = ParametersStore(sample_rate=1000.0)
        before = store.get()
        try:
            store.update(**{name: value})
        except ConfigurationError:
            assert store.get() is before
            return
        store.get().validate(1000.0)
