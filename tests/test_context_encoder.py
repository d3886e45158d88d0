"""
Tests for context encoding.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import numpy as np
import pytest

from models.context_encoder import Context, ContextEncoder


def block(encoded, name):
    return encoded.blocks[name]


class TestContext:
    """Test the context descriptor."""

    def test_from_dict_accepts_camel_case(self):
        """camelCase keys from web clients map onto the snake_case fields."""
        context = Context.from_dict({'mood': 'curious', 'timeOfDay': 'evening', 'dayOfWeek': 2, 'extra': 1})
        assert context.mood == 'curious'
        assert context.time_of_day == 'evening'
        assert context.day_of_week == 2

    def test_signature_and_describe(self):
        """Signature lists mood, situation, goal and time of day."""
        context = Context(mood='curious', goal='learning')
        assert context.signature == 'curious|none|learning|none'
        assert context.describe() == 'mood:curious, goal:learning'
        assert Context().describe() == 'neutral context'

    def test_to_dict_drops_missing_fields(self):
        assert Context(mood='relaxed').to_dict() == {'mood': 'relaxed'}


class TestEncoding:
    """Test the 44-dimension encoding."""

    def test_vector_has_unit_norm(self, encoder, now):
        """Every successfully encoded context is L2-normalised."""
        contexts = [
            {},
            {'mood': 'curious'},
            {'mood': 'relaxed', 'situation': 'before_bed', 'goal': 'escape'},
            {'mood': 'unknown-mood', 'situation': 'nowhere'},
        ]
        for context in contexts:
            encoded = encoder.encode(context, now=now)
            assert encoded.dimension == 44
            assert np.linalg.norm(encoded.vector) == pytest.approx(1.0)

    def test_block_sizes(self, encoder, now):
        encoded = encoder.encode({'mood': 'curious'}, now=now)
        sizes = {name: len(values) for name, values in encoded.blocks.items()}
        assert sizes == {'mood': 8, 'situation': 8, 'goal': 8, 'temporal': 12, 'user': 8}

    def test_vector_is_read_only(self, encoder, now):
        encoded = encoder.encode({'mood': 'curious'}, now=now)
        with pytest.raises(ValueError):
            encoded.vector[0] = 1.0

    def test_identical_contexts_have_similarity_one(self, encoder, now):
        """With a pinned clock the same context always encodes the same way."""
        first = encoder.encode({'mood': 'curious', 'situation': 'commuting'}, 'reader', now=now)
        second = encoder.encode({'mood': 'curious', 'situation': 'commuting'}, 'reader', now=now)
        assert encoder.similarity(first, second) == pytest.approx(1.0)
        assert np.array_equal(first.vector, second.vector)

    def test_unknown_category_is_neutral(self, encoder, now):
        """Unrecognised values encode as a zero block, not an error."""
        encoded = encoder.encode({'mood': 'grumpy'}, now=now)
        assert block(encoded, 'mood') == [0.0] * 8
        assert encoded.degraded_blocks == []

    def test_lookup_is_case_insensitive(self, encoder, now):
        upper = encoder.encode({'mood': 'Curious'}, now=now)
        lower = encoder.encode({'mood': 'curious'}, now=now)
        assert block(upper, 'mood') == block(lower, 'mood')

    def test_related_moods_overlap(self, encoder, now):
        """Related moods are closer than unrelated ones."""
        excited = encoder.encode({'mood': 'excited'}, now=now)
        motivated = encoder.encode({'mood': 'motivated'}, now=now)
        relaxed = encoder.encode({'mood': 'relaxed'}, now=now)

        excited_mood = np.array(block(excited, 'mood'))
        assert excited_mood @ np.array(block(motivated, 'mood')) > 0
        assert encoder.similarity(excited, motivated) > encoder.similarity(excited, relaxed)

    def test_unreadable_context_never_raises(self, encoder, now):
        encoded = encoder.encode(42, now=now)
        assert block(encoded, 'mood') == [0.0] * 8
        assert encoded.dimension == 44

    def test_failing_block_degrades_to_zeros(self, encoder, now):
        """A block that cannot be computed is zeroed and reported."""
        with patch.object(ContextEncoder, '_encode_temporal', side_effect=RuntimeError('clock broke')):
            encoded = encoder.encode({'mood': 'curious'}, now=now)

        assert encoded.degraded_blocks == ['temporal']
        assert block(encoded, 'temporal') == [0.0] * 12
        assert np.linalg.norm(encoded.vector) == pytest.approx(1.0)

    def test_zero_encoding(self, encoder, now):
        """The fully degraded encoding is the exact zero vector."""
        encoded = encoder.zero_encoding(now=now)
        assert encoded.dimension == 44
        assert not encoded.vector.any()


class TestTemporalBlock:
    """Test the clock-derived features."""

    def test_weekend_and_day_features(self, encoder):
        """Saturday is day 6 with 0 = Sunday, and flags the weekend."""
        saturday = datetime(2024, 1, 6, 10, 0)
        temporal = block(encoder.encode({}, now=saturday), 'temporal')

        assert temporal[8] == 1.0
        assert temporal[10] == pytest.approx(10 / 24)
        assert temporal[11] == pytest.approx(6 / 7)

    def test_time_of_day_one_hot(self, encoder):
        temporal = block(encoder.encode({}, now=datetime(2024, 1, 6, 10, 0)), 'temporal')
        assert temporal[4:8] == [1.0, 0.0, 0.0, 0.0]

        temporal = block(encoder.encode({'time_of_day': 'night'}, now=datetime(2024, 1, 6, 10, 0)), 'temporal')
        assert temporal[4:8] == [0.0, 0.0, 0.0, 1.0]

    def test_day_of_week_override(self, encoder, now):
        """A day on the context wins over the clock's weekday."""
        temporal = block(encoder.encode({'day_of_week': 'monday'}, now=now), 'temporal')
        assert temporal[11] == pytest.approx(1 / 7)
        assert temporal[8] == 0.0

        temporal = block(encoder.encode({'day_of_week': 0}, now=now), 'temporal')
        assert temporal[8] == 1.0

    def test_cyclical_hour(self, encoder):
        temporal = block(encoder.encode({}, now=datetime(2024, 1, 2, 6, 0)), 'temporal')
        assert temporal[0] == pytest.approx(1.0)
        assert temporal[1] == pytest.approx(0.0, abs=1e-12)

    def test_time_of_day_boundaries(self, encoder):
        assert encoder.current_time_of_day(datetime(2024, 1, 1, 5, 0)) == 'morning'
        assert encoder.current_time_of_day(datetime(2024, 1, 1, 12, 0)) == 'afternoon'
        assert encoder.current_time_of_day(datetime(2024, 1, 1, 17, 0)) == 'evening'
        assert encoder.current_time_of_day(datetime(2024, 1, 1, 21, 0)) == 'night'
        assert encoder.current_time_of_day(datetime(2024, 1, 1, 4, 59)) == 'night'


class TestUserBlock:
    """Test the identity features."""

    def test_anonymous_defaults(self, encoder, now):
        user = block(encoder.encode({}, now=now), 'user')
        assert user == [0.5, 0.5, 0.5, 0.5, 0.5, 1.0, 0.0, 0.0]

    def test_identity_flag(self, encoder, now):
        user = block(encoder.encode({}, 'reader-1', now=now), 'user')
        assert user == [0.5, 0.5, 0.5, 0.5, 0.5, 0.0, 1.0, 0.0]

    def test_supplied_features(self, encoder, now):
        features = {'preference_history': [0.9, 0.1], 'engagement_level': 0.8, 'diversity_score': 0.2}
        user = block(encoder.encode({}, 'reader-1', features, now=now), 'user')
        assert user[:5] == [0.9, 0.1, 0.5, 0.8, 0.2]


class TestContextHelpers:
    """Test comparison, defaults and staleness helpers."""

    def test_compare_explains_shared_fields(self, encoder, now):
        result = encoder.compare({'mood': 'curious', 'goal': 'learning'},
                                 {'mood': 'curious', 'goal': 'learning'}, now=now)
        assert result.similarity == pytest.approx(1.0)
        assert result.explanation.startswith('Very similar contexts')
        assert 'same mood (curious)' in result.explanation

    def test_find_similar_contexts(self, encoder, now):
        history = [
            {'mood': 'curious', 'situation': 'commuting'},
            {'mood': 'inspired', 'situation': 'commuting'},
            {'mood': 'relaxed', 'situation': 'before_bed', 'goal': 'relaxation'},
        ]
        matches = encoder.find_similar_contexts({'mood': 'curious', 'situation': 'commuting'}, history,
                                                threshold=0.9, now=now)
        assert matches[0].similarity == pytest.approx(1.0)
        assert all(match.similarity >= 0.9 for match in matches)
        assert len(encoder.find_similar_contexts({'mood': 'curious'}, history, threshold=0.0, limit=2,
                                                 now=now)) == 2

    def test_smart_defaults_follow_time_of_day(self, encoder):
        night = encoder.smart_defaults(datetime(2024, 3, 5, 22, 0))
        assert (night.mood, night.situation, night.goal) == ('peaceful', 'before_bed', 'relaxation')

        weekday_morning = encoder.smart_defaults(datetime(2024, 3, 5, 8, 0))
        assert weekday_morning.situation == 'commuting'

        weekend_morning = encoder.smart_defaults(datetime(2024, 3, 9, 8, 0))
        assert weekend_morning.situation == 'weekend'

    def test_is_stale(self, encoder, now):
        context = Context(mood='curious', time_of_day='morning')
        assert not encoder.is_stale(context, now - timedelta(hours=1), now)
        assert encoder.is_stale(context, now - timedelta(hours=7), now)
        assert encoder.is_stale(Context(time_of_day='night'), now - timedelta(minutes=5), now)
        assert not encoder.is_stale(context, None, now)
