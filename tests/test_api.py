"""
Tests for the HTTP layer.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from api.main import app, get_recommendation_engine
from models.exceptions import ComputationError, PersistenceError


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_recommendation_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestStrategyEndpoint:
    """Test POST /strategy."""

    def test_select_strategy(self, client):
        response = client.post("/strategy", json={"identity": "reader-1", "context": {"mood": "curious"},
                                                  "timestamp": "2024-03-05T09:30:00"})

        assert response.status_code == 200
        data = response.json()
        assert data["arm_id"] == "semantic_similarity"
        assert data["fallback"] is False
        assert "Selected Content-Based strategy" in data["explanation"]

    def test_camel_case_context(self, client, engine):
        with patch.object(engine, 'select_strategy', wraps=engine.select_strategy) as select_strategy:
            response = client.post("/strategy", json={
                "identity": "reader-1",
                "context": {"mood": "relaxed", "timeOfDay": "night", "dayOfWeek": 6},
            })

        assert response.status_code == 200
        context = select_strategy.call_args.args[0]
        assert context == {"mood": "relaxed", "time_of_day": "night", "day_of_week": 6}

    def test_missing_identity(self, client):
        assert client.post("/strategy", json={"context": {}}).status_code == 422


class TestFeedbackEndpoints:
    """Test impression, action and model update endpoints."""

    def test_impression_then_action(self, client, engine):
        response = client.post("/impressions", json={
            "identity": "reader-1",
            "book_id": "B1",
            "arm_id": "contextual_mood",
            "context": {"mood": "curious"},
            "rank": 1,
            "shown_at": "2024-03-05T09:30:00",
        })
        assert response.status_code == 200
        impression_id = response.json()["impression_id"]

        response = client.post("/actions", json={
            "identity": "reader-1",
            "book_id": "B1",
            "action_type": "save",
            "timestamp": "2024-03-05T09:40:00",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["attributed"] == 1
        assert data["attributions"][0]["impression_id"] == impression_id
        assert data["attributions"][0]["learned"] is True
        assert engine.get_stats("reader-1").total_interactions == 1

    def test_action_with_utc_timestamp(self, client, engine):
        client.post("/impressions", json={"identity": "reader-1", "book_id": "B1", "arm_id": "contextual_mood"})

        acted_at = (datetime.now(timezone.utc) + timedelta(minutes=5)).strftime("%Y-%m-%dT%H:%M:%SZ")
        response = client.post("/actions", json={"identity": "reader-1", "book_id": "B1", "action_type": "click",
                                                  "timestamp": acted_at})

        assert response.status_code == 200
        assert response.json()["attributed"] == 1
        assert len(engine.event_store.list_actions("reader-1")) == 1

    def test_unknown_action_type(self, client):
        response = client.post("/actions", json={"identity": "reader-1", "book_id": "B1", "action_type": "wishlist"})
        assert response.status_code == 422

    def test_model_update(self, client):
        response = client.post("/models/update", json={"identity": "reader-1", "arm_id": "trending_popular",
                                                       "reward": 1.0})
        assert response.status_code == 200
        assert response.json()["interaction_count"] == 1

    def test_model_update_unknown_arm(self, client):
        response = client.post("/models/update", json={"identity": "reader-1", "arm_id": "astrology", "reward": 1.0})
        assert response.status_code == 422

    def test_model_update_storage_failure(self, client, engine):
        with patch.object(engine.model_store, 'save', side_effect=PersistenceError('disk full')):
            response = client.post("/models/update", json={"identity": "reader-1", "arm_id": "trending_popular",
                                                           "reward": 1.0})
        assert response.status_code == 503

    def test_model_update_computation_failure(self, client, engine):
        with patch.object(engine.selector, 'apply_update', side_effect=ComputationError('singular')):
            response = client.post("/models/update", json={"identity": "reader-1", "arm_id": "trending_popular",
                                                           "reward": 1.0})
        assert response.status_code == 409


class TestManagementEndpoints:
    """Test statistics, operations and monitoring endpoints."""

    def test_stats(self, client):
        client.post("/models/update", json={"identity": "reader-1", "arm_id": "trending_popular", "reward": 2.0})

        data = client.get("/stats/reader-1").json()
        assert data["best_arm"] == "trending_popular"
        assert data["total_interactions"] == 1
        assert len(data["per_arm"]) == 6

    def test_initialize_and_reset(self, client):
        assert client.post("/models/reader-1/initialize").json()["initialized"] == 6

        response = client.post("/models/reset", json={"identity": "reader-1"})
        assert response.json()["removed"] == 6
        assert client.post("/models/reset", json={"identity": "reader-1", "arm_id": "astrology"}).status_code == 422

    def test_migrate(self, client):
        client.post("/models/update", json={"identity": "anon-1", "arm_id": "trending_popular", "reward": 1.0})

        response = client.post("/identity/migrate", json={"anonymous": "anon-1", "authenticated": "reader-1"})
        assert response.status_code == 200
        assert response.json()["moved"] == 1

        response = client.post("/identity/migrate", json={"anonymous": "reader-1", "authenticated": "reader-1"})
        assert response.status_code == 422

    def test_process_rewards(self, client):
        response = client.post("/rewards/process", json={"identity": "reader-1"})
        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_compare_contexts(self, client):
        response = client.post("/contexts/compare", json={
            "context1": {"mood": "curious"},
            "context2": {"mood": "curious"},
            "timestamp": "2024-03-05T09:30:00",
        })
        assert response.json()["similarity"] == pytest.approx(1.0)

    def test_context_defaults(self, client):
        data = client.get("/contexts/defaults").json()
        assert {"mood", "situation", "goal", "time_of_day"} <= set(data)

    def test_metrics(self, client):
        client.post("/strategy", json={"identity": "reader-1"})

        data = client.get("/metrics").json()
        assert data["total_selections"] == 1
        assert data["fallback_selections"] == 0

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "healthy"

        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["strategies"][0] == "semantic_similarity"
