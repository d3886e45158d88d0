"""
Categorical Variables for the Reading Strategy Bandit

Contains the standardised vocabularies used throughout the system:
- Semantic lookup tables for mood, situation and goal
- Time of day buckets
- The canonical recommendation strategies (arms)
- Legacy strategy aliases and user action types
"""

# Mood encoding with semantic relationships. Related moods share
# non-zero coordinates so that similar contexts land close together.
MOOD_MAPPINGS = {
    # Primary moods
    'motivated': [1.0, 0.8, 0.6, 0.2, 0.0, 0.0, 0.0, 0.0],
    'curious': [0.6, 1.0, 0.4, 0.8, 0.2, 0.0, 0.0, 0.0],
    'relaxed': [0.0, 0.2, 0.0, 0.0, 1.0, 0.8, 0.6, 0.2],
    'adventurous': [0.8, 0.6, 1.0, 0.4, 0.0, 0.0, 0.0, 0.0],
    'nostalgic': [0.2, 0.4, 0.0, 0.6, 0.8, 0.6, 1.0, 0.4],
    'focused': [0.8, 0.9, 0.4, 0.6, 0.0, 0.0, 0.0, 0.0],

    # Secondary moods, combinations of the primary ones
    'excited': [0.9, 0.7, 0.8, 0.3, 0.0, 0.0, 0.0, 0.0],
    'contemplative': [0.2, 0.8, 0.0, 0.4, 0.6, 0.4, 0.8, 0.6],
    'energetic': [0.9, 0.6, 0.7, 0.4, 0.0, 0.0, 0.0, 0.0],
    'peaceful': [0.0, 0.1, 0.0, 0.0, 0.9, 0.8, 0.7, 0.3],
    'inspired': [0.7, 0.9, 0.5, 0.8, 0.2, 0.0, 0.0, 0.0],
    'thoughtful': [0.3, 0.7, 0.2, 0.5, 0.4, 0.3, 0.6, 0.4],
}

SITUATION_MAPPINGS = {
    # Location and time based
    'commuting': [1.0, 0.0, 0.6, 0.4, 0.0, 0.0, 0.0, 0.0],
    'before_bed': [0.0, 0.0, 0.0, 0.0, 1.0, 0.8, 0.0, 0.0],
    'weekend': [0.0, 1.0, 0.0, 0.0, 0.6, 0.4, 0.8, 0.0],
    'lunch_break': [0.6, 0.0, 0.8, 0.6, 0.2, 0.0, 0.0, 0.0],
    'traveling': [0.8, 0.2, 0.4, 0.6, 0.0, 0.0, 0.0, 0.0],
    'studying': [0.2, 0.0, 0.2, 0.0, 0.0, 0.0, 0.0, 1.0],

    # Activity based
    'break_time': [0.4, 0.6, 0.6, 0.4, 0.4, 0.2, 0.6, 0.0],
    'waiting': [0.6, 0.2, 0.4, 0.8, 0.2, 0.0, 0.0, 0.0],
    'vacation': [0.2, 0.8, 0.2, 0.2, 0.8, 0.6, 0.9, 0.0],
    'work_day': [0.4, 0.0, 0.6, 0.2, 0.0, 0.0, 0.0, 0.6],
    'evening': [0.0, 0.4, 0.0, 0.0, 0.6, 1.0, 0.4, 0.0],
    'morning': [0.6, 0.2, 0.4, 0.8, 0.0, 0.0, 0.0, 0.4],
}

GOAL_MAPPINGS = {
    # Learning and growth
    'entertainment': [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
    'learning': [0.0, 1.0, 0.8, 0.6, 0.0, 0.0, 0.0, 0.0],
    'professional': [0.0, 0.8, 1.0, 0.4, 0.0, 0.0, 0.0, 0.0],
    'inspiration': [0.4, 0.6, 0.2, 1.0, 0.0, 0.0, 0.0, 0.0],
    'relaxation': [0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0],
    'perspective': [0.2, 0.8, 0.4, 0.8, 0.0, 1.0, 0.0, 0.0],

    # Compound goals
    'skill_building': [0.0, 0.9, 0.8, 0.4, 0.0, 0.0, 0.0, 0.0],
    'escape': [0.8, 0.0, 0.0, 0.2, 0.8, 0.0, 0.0, 0.0],
    'self_improvement': [0.2, 0.7, 0.6, 0.8, 0.0, 0.4, 0.0, 0.0],
    'creativity': [0.4, 0.5, 0.0, 0.9, 0.0, 0.6, 0.0, 0.0],
    'productivity': [0.0, 0.6, 0.9, 0.6, 0.0, 0.0, 0.0, 0.0],
    'mindfulness': [0.0, 0.2, 0.0, 0.4, 0.9, 0.8, 0.0, 0.0],
}

# Time of day categories (order defines the one-hot layout)
TIME_OF_DAY_CATEGORIES = ['morning', 'afternoon', 'evening', 'night']

DAY_OF_WEEK_NAMES = ['sunday', 'monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday']

# User action categories
ACTION_CATEGORIES = ['click', 'save', 'unsave', 'rate', 'view', 'dismiss', 'share']

# Canonical recommendation strategies. Order matters: ties during
# selection go to the arm listed first.
STRATEGY_ARMS = [
    {
        'arm_id': 'semantic_similarity',
        'name': 'Content-Based',
        'description': 'Recommendations based on book content similarity',
        'metadata': {'priority': 'content_match', 'speed': 'fast'},
    },
    {
        'arm_id': 'contextual_mood',
        'name': 'Mood-Based',
        'description': 'Recommendations matching current mood and situation',
        'metadata': {'priority': 'mood_match', 'speed': 'medium'},
    },
    {
        'arm_id': 'trending_popular',
        'name': 'Trending',
        'description': 'Popular and trending books',
        'metadata': {'priority': 'popularity', 'speed': 'fast'},
    },
    {
        'arm_id': 'collaborative_filtering',
        'name': 'Collaborative',
        'description': 'Books liked by similar users',
        'metadata': {'priority': 'user_similarity', 'speed': 'slow'},
    },
    {
        'arm_id': 'personalized_mix',
        'name': 'Personalized Mix',
        'description': 'Balanced mix of different approaches',
        'metadata': {'priority': 'balanced', 'speed': 'medium'},
    },
    {
        'arm_id': 'contextual_basic',
        'name': 'Basic Contextual',
        'description': 'Default contextual recommendation strategy',
        'metadata': {'priority': 'basic', 'speed': 'fast'},
    },
]

# Strategy names written by older clients onto impressions
LEGACY_ARM_ALIASES = {
    'bandit': 'contextual_basic',
    'default': 'contextual_basic',
    'unknown': 'contextual_basic',
    'semantic': 'semantic_similarity',
    'collaborative': 'collaborative_filtering',
    'trending': 'trending_popular',
    'hybrid': 'personalized_mix',
}

DEFAULT_ALIAS_TARGET = 'contextual_basic'
FALLBACK_ARM = 'semantic_similarity'

# Category mappings for easy access
CATEGORY_MAPPINGS = {
    'mood': MOOD_MAPPINGS,
    'situation': SITUATION_MAPPINGS,
    'goal': GOAL_MAPPINGS,
}


def get_categories(category_name: str):
    """
    Get the lookup table for a semantic category.

    Args:
        category_name: Name of the category ('mood', 'situation' or 'goal')

    Returns:
        Mapping of value to 8-dimensional vector

    Raises:
        KeyError: If category name not found
    """
    if category_name not in CATEGORY_MAPPINGS:
        raise KeyError(f"Category '{category_name}' not found. Available categories: {list(CATEGORY_MAPPINGS.keys())}")

    return CATEGORY_MAPPINGS[category_name]
