"""
Tests for helper functions and event observers.
"""

import logging
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from services.observer import CompositeObserver, LoggingObserver, MetricsObserver
from utils import (
    clamp,
    cosine_similarity,
    encode_categorical_feature,
    encode_one_hot,
    l2_normalise,
    normalise_numeric_feature,
    normalise_timestamp,
    safe_divide,
)


class TestEncodingHelpers:
    def test_categorical_lookup(self):
        assert encode_categorical_feature('relaxation', 'goal') == [0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0]
        assert encode_categorical_feature('grumpy', 'mood') == [0.0] * 8
        assert encode_categorical_feature(None, 'mood') == [0.0] * 8

    def test_unknown_category_name(self):
        with pytest.raises(ValueError):
            encode_categorical_feature('curious', 'weather')

    def test_one_hot(self):
        assert encode_one_hot('b', ['a', 'b', 'c']) == [0.0, 1.0, 0.0]
        assert encode_one_hot('z', ['a', 'b', 'c']) == [0.0, 0.0, 0.0]


class TestVectorHelpers:
    def test_l2_normalise(self):
        assert np.allclose(l2_normalise(np.array([3.0, 4.0])), [0.6, 0.8])
        zero = np.zeros(3)
        assert l2_normalise(zero) is zero

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 0.0])

    def test_numeric_helpers(self):
        assert normalise_numeric_feature(5, 0, 10) == 0.5
        assert normalise_numeric_feature(None, 0, 1, default_val=0.5) == 0.5
        assert normalise_numeric_feature(3, 0, 1) == 1.0
        assert clamp(-2, 0, 1) == 0
        assert safe_divide(1, 0, default=7) == 7

    def test_normalise_timestamp(self):
        naive = datetime(2024, 3, 5, 9, 30)
        assert normalise_timestamp(naive) is naive
        assert normalise_timestamp(None) is None

        aware = datetime(2024, 3, 5, 9, 30, tzinfo=timezone(timedelta(hours=5)))
        local = normalise_timestamp(aware)
        assert local.tzinfo is None
        assert local.astimezone(timezone.utc) == aware


class TestObservers:
    """Test event sinks."""

    def test_metrics_observer(self):
        observer = MetricsObserver(keep_history=2)
        observer.emit('strategy_selected', arm_id='A')
        observer.emit('strategy_selected', arm_id='B')
        observer.emit('fallback_used', arm_id='A')

        assert observer.snapshot() == {'strategy_selected': 2, 'fallback_used': 1}
        assert observer.last_fields['strategy_selected'] == {'arm_id': 'B'}
        assert [entry['event'] for entry in observer.history] == ['strategy_selected', 'fallback_used']

    def test_logging_observer(self, caplog):
        observer = LoggingObserver(logging.getLogger('bandit.events'))
        with caplog.at_level(logging.INFO, logger='bandit.events'):
            observer.emit('model_updated', arm_id='A', reward=0.5)
            observer.emit('update_failed', arm_id='A')

        assert caplog.records[0].getMessage() == 'event=model_updated arm_id=A reward=0.5'
        assert caplog.records[1].levelno == logging.WARNING

    def test_composite_isolates_failures(self):
        class Broken(MetricsObserver):
            def emit(self, event, **fields):
                raise RuntimeError('sink down')

        metrics = MetricsObserver()
        CompositeObserver(Broken(), metrics).emit('batch_processed', processed=1)
        assert metrics.counts['batch_processed'] == 1
