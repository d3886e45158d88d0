"""
Demo script for the Reading Strategy Bandit

Simulates readers whose favourite recommendation strategy depends on their
mood, and shows the bandit learning which strategy to trust in each context.
"""

import random
from datetime import datetime, timedelta
from typing import Dict

import numpy as np

from config.config import BanditConfig
from config.logging_config import configure_logging
from services.observer import MetricsObserver
from services.recommendation_engine import BanditRecommendationEngine

# Probability that a reader clicks a book recommended by each strategy, per mood
CLICK_PROBABILITIES = {
    'curious': {'semantic_similarity': 0.7, 'contextual_mood': 0.3, 'trending_popular': 0.2},
    'relaxed': {'contextual_mood': 0.8, 'trending_popular': 0.4, 'semantic_similarity': 0.1},
    'adventurous': {'trending_popular': 0.6, 'collaborative_filtering': 0.5},
}

SITUATIONS = ['commuting', 'before_bed', 'lunch_break', 'weekend']


def simulate_session(engine: BanditRecommendationEngine, identity: str, mood: str,
                     now: datetime) -> Dict[str, object]:
    """One request: choose a strategy, show a book, maybe click it."""
    context = {'mood': mood, 'situation': random.choice(SITUATIONS)}
    selection = engine.select_strategy(context, identity, now=now)

    book_id = f"book_{random.randint(1, 500):03d}"
    engine.record_impression(identity, book_id, context, selection.arm_id, rank=1,
                             score=selection.ucb, shown_at=now)

    clicked = random.random() < CLICK_PROBABILITIES[mood].get(selection.arm_id, 0.05)
    if clicked:
        engine.record_action(identity, book_id, 'click', timestamp=now + timedelta(minutes=random.randint(1, 30)))
    else:
        engine.record_action(identity, book_id, 'dismiss', timestamp=now + timedelta(seconds=20))

    return {'arm_id': selection.arm_id, 'clicked': clicked, 'exploration': selection.exploration_level}


def demonstrate_learning_progression(engine: BanditRecommendationEngine, identity: str,
                                     start: datetime, sessions: int = 120):
    """Run sessions across moods and report how often each mood gets its best strategy."""
    print("\n" + "=" * 60)
    print("DEMONSTRATING LEARNING PROGRESSION")
    print("=" * 60)

    best_arm = {mood: max(probs, key=probs.get) for mood, probs in CLICK_PROBABILITIES.items()}
    window = []

    for session in range(1, sessions + 1):
        mood = random.choice(list(CLICK_PROBABILITIES))
        result = simulate_session(engine, identity, mood, start + timedelta(hours=session))
        window.append(result['arm_id'] == best_arm[mood])

        if session % 20 == 0:
            print(f"Sessions {session - 19:3d}-{session:3d}: best strategy chosen "
                  f"{np.mean(window) * 100:.0f}% of the time")
            window = []


def demonstrate_context_preferences(engine: BanditRecommendationEngine, identity: str, now: datetime):
    """Show the strategy chosen for each mood after learning."""
    print("\n" + "=" * 60)
    print("STRATEGY PER CONTEXT")
    print("=" * 60)

    for mood in CLICK_PROBABILITIES:
        selection = engine.select_strategy({'mood': mood}, identity, now=now)
        print(f"{mood:12s} -> {selection.arm_name:18s} {selection.explanation}")


def main():
    """Main demo function."""
    configure_logging("WARNING")
    random.seed(7)

    print("Reading Strategy Bandit - Contextual Bandit Demo")
    print("=" * 60)

    metrics = MetricsObserver()
    engine = BanditRecommendationEngine(BanditConfig(alpha=0.5), observer=metrics)
    start = datetime(2024, 3, 4, 8, 0)

    # Demo 1: Learning progression for a signed-in reader
    demonstrate_learning_progression(engine, "reader_001", start)

    # Demo 2: What the bandit learned
    demonstrate_context_preferences(engine, "reader_001", start + timedelta(days=6))

    # Demo 3: Anonymous session merged into the account
    print("\n" + "=" * 60)
    print("IDENTITY MIGRATION")
    print("=" * 60)
    for session in range(10):
        simulate_session(engine, "anon_session_42", "relaxed", start + timedelta(hours=session))
    summary = engine.migrate_identity("anon_session_42", "reader_001")
    print(f"Migrated anonymous session: {summary}")

    # Demo 4: Model statistics
    print("\n" + "=" * 60)
    print("MODEL STATISTICS")
    print("=" * 60)
    frame = engine.stats_frame("reader_001")
    print(frame[['arm_id', 'interactions', 'average_reward', 'confidence', 'trained']].to_string(index=False))

    print("\nEvent counts:")
    for event, count in sorted(metrics.snapshot().items()):
        print(f"  {event}: {count}")

    print("\n" + "=" * 60)
    print("DEMO COMPLETED SUCCESSFULLY!")
    print("=" * 60)


if __name__ == "__main__":
    main()
