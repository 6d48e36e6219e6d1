"""
API Integration Tests for the Progression Engine

Exercises the HTTP surface end to end against an in-memory service:
1. Normal operation with valid inputs
2. Validation failures and the error envelope
3. Error status mapping for missing categories and version conflicts
"""

import datetime
import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from progression import create_app
from progression.common.clock import ManualClock
from progression.common.config import AppConfig
from progression.common.exceptions import ConflictError
from progression.service import ProgressionService
from progression.storage.base import StateRepository

START = datetime.datetime(2024, 1, 1, 9, 0, 0)
PREFIX = "/api/v1/progression"
TEST_USER_ID = "test-user-1"


def attempt_payload(**overrides):
    payload = {
        "attempt_id": "attempt-1",
        "user_id": TEST_USER_ID,
        "challenge_id": "stoich-1",
        "challenge_type": "stoichiometry",
        "concepts": ["Stoichiometry"],
        "is_correct": True,
        "score": 80,
        "time_elapsed_sec": 45,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def service(clock):
    return ProgressionService(config=AppConfig(), clock=clock)


@pytest.fixture
def client(service):
    # The lifespan is not entered, so the maintenance job stays idle.
    return TestClient(create_app(service))


class TestAttempts:
    """Attempt submission and performance reads."""

    def test_submit_attempt(self, client):
        response = client.post(f"{PREFIX}/attempts", json=attempt_payload())
        assert response.status_code == 201

        body = response.json()
        assert body["status"] == "success"
        assert body["message"] == "Attempt recorded"
        assert body["data"]["attempt_id"] == "attempt-1"
        assert body["data"]["duplicate"] is False
        assert body["data"]["difficulty_level"] == 1

    def test_duplicate_attempt(self, client):
        client.post(f"{PREFIX}/attempts", json=attempt_payload())
        response = client.post(f"{PREFIX}/attempts", json=attempt_payload())

        assert response.status_code == 201
        assert response.json()["message"] == "Attempt already recorded"
        assert response.json()["data"]["duplicate"] is True

        metrics = client.get(f"{PREFIX}/users/{TEST_USER_ID}/metrics").json()["data"]
        assert metrics["total_challenges_completed"] == 1

    def test_missing_field(self, client):
        payload = attempt_payload()
        del payload["challenge_id"]
        response = client.post(f"{PREFIX}/attempts", json=payload)

        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "error"
        assert body["code"] == "validation_error"

    def test_unknown_challenge_type(self, client):
        response = client.post(f"{PREFIX}/attempts", json=attempt_payload(challenge_type="alchemy"))
        assert response.status_code == 422

    def test_score_out_of_range(self, client):
        response = client.post(f"{PREFIX}/attempts", json=attempt_payload(score=150))

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "validation_error"
        assert "score" in body["details"]

    def test_infinite_time_rejected(self, client):
        body = json.dumps(attempt_payload()).replace('"time_elapsed_sec": 45', '"time_elapsed_sec": 1e400')
        response = client.post(
            f"{PREFIX}/attempts", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

        metrics = client.get(f"{PREFIX}/users/{TEST_USER_ID}/metrics")
        assert metrics.status_code == 200
        assert metrics.json()["data"]["total_challenges_completed"] == 0

    def test_metrics_and_weak_areas(self, client):
        for index in range(3):
            client.post(f"{PREFIX}/attempts", json=attempt_payload(
                attempt_id=f"attempt-{index}", is_correct=False, score=10
            ))

        metrics = client.get(f"{PREFIX}/users/{TEST_USER_ID}/metrics")
        assert metrics.status_code == 200
        assert metrics.json()["data"]["overall_accuracy"] == 0.0

        weak_areas = client.get(f"{PREFIX}/users/{TEST_USER_ID}/weak-areas").json()["data"]
        assert [area["concept"] for area in weak_areas] == ["Stoichiometry"]

    def test_metrics_for_unknown_user(self, client):
        response = client.get(f"{PREFIX}/users/nobody/metrics")
        assert response.status_code == 200
        assert response.json()["data"]["total_challenges_completed"] == 0


class TestDifficulty:
    """Adaptive difficulty endpoints."""

    def test_get_difficulty(self, client):
        response = client.get(f"{PREFIX}/users/{TEST_USER_ID}/difficulty/gas_test")
        assert response.status_code == 200
        assert response.json()["data"] == {
            "user_id": TEST_USER_ID, "challenge_type": "gas_test", "level": 1
        }

    def test_adjust_difficulty(self, client):
        response = client.post(
            f"{PREFIX}/users/{TEST_USER_ID}/difficulty/gas_test/adjust",
            json={"accuracy": 0.95, "average_time_sec": 20, "streak": 4}
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Difficulty adjusted"

        level = client.get(f"{PREFIX}/users/{TEST_USER_ID}/difficulty/gas_test").json()["data"]["level"]
        assert level == 2

    def test_adjust_rejects_bad_accuracy(self, client):
        response = client.post(
            f"{PREFIX}/users/{TEST_USER_ID}/difficulty/gas_test/adjust",
            json={"accuracy": 2}
        )
        assert response.status_code == 422
        assert response.json()["status"] == "error"


class TestStreaks:
    """Login and streak endpoints."""

    def test_record_login(self, client, clock):
        response = client.post(f"{PREFIX}/logins", json={"user_id": TEST_USER_ID})
        assert response.status_code == 200
        assert response.json()["message"] == "Login recorded"
        assert response.json()["data"]["current_streak"] == 1

        again = client.post(f"{PREFIX}/logins", json={"user_id": TEST_USER_ID})
        assert again.json()["message"] == "Already logged in today"

        clock.advance(days=1)
        next_day = client.post(f"{PREFIX}/logins", json={"user_id": TEST_USER_ID})
        assert next_day.json()["data"]["current_streak"] == 2

    def test_login_requires_user(self, client):
        response = client.post(f"{PREFIX}/logins", json={"user_id": ""})
        assert response.status_code == 422

    def test_get_streak(self, client):
        client.post(f"{PREFIX}/logins", json={"user_id": TEST_USER_ID})
        data = client.get(f"{PREFIX}/users/{TEST_USER_ID}/streak").json()["data"]

        assert data["stats"]["current_streak"] == 1
        assert data["milestones"][0]["day"] == 3
        assert data["recovery"]["available_recoveries"] == 1

    def test_streak_bonuses(self, client):
        response = client.get(f"{PREFIX}/users/{TEST_USER_ID}/streak/bonuses")
        assert response.status_code == 200
        assert isinstance(response.json()["data"], list)

    def test_streak_recovery(self, client):
        first = client.post(f"{PREFIX}/users/{TEST_USER_ID}/streak/recovery", json={})
        assert first.status_code == 200
        assert first.json()["data"]["recovered"] is True

        second = client.post(f"{PREFIX}/users/{TEST_USER_ID}/streak/recovery", json={})
        assert second.status_code == 200
        assert second.json()["data"]["recovered"] is False
        assert second.json()["message"] == "No streak recoveries available"

    def test_reset_streak(self, client):
        client.post(f"{PREFIX}/logins", json={"user_id": TEST_USER_ID})
        response = client.delete(f"{PREFIX}/users/{TEST_USER_ID}/streak")

        assert response.status_code == 200
        assert response.json()["data"]["current_streak"] == 0


class TestLeaderboards:
    """Leaderboard endpoints."""

    def test_list_categories(self, client):
        response = client.get(f"{PREFIX}/leaderboards")
        assert response.status_code == 200
        assert len(response.json()["data"]) == 5

    def test_leaderboard_after_attempts(self, client):
        client.post(f"{PREFIX}/attempts", json=attempt_payload(user_id="alice", attempt_id="a-1"))
        client.post(f"{PREFIX}/attempts", json=attempt_payload(
            user_id="bob", attempt_id="b-1", is_correct=False, score=10
        ))

        entries = client.get(f"{PREFIX}/leaderboards/overall-accuracy").json()["data"]
        assert [entry["user_id"] for entry in entries] == ["alice", "bob"]

        limited = client.get(f"{PREFIX}/leaderboards/overall-accuracy", params={"limit": 1}).json()["data"]
        assert len(limited) == 1

        rank = client.get(f"{PREFIX}/leaderboards/overall-accuracy/users/bob").json()["data"]
        assert rank["rank"] == 2
        assert [entry["user_id"] for entry in rank["context"]] == ["alice", "bob"]

    def test_unknown_category(self, client):
        response = client.get(f"{PREFIX}/leaderboards/nope")
        assert response.status_code == 200
        assert response.json()["data"] == []

    def test_unknown_category_rank(self, client):
        response = client.get(f"{PREFIX}/leaderboards/nope/users/{TEST_USER_ID}")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_invalid_limit(self, client):
        response = client.get(f"{PREFIX}/leaderboards/overall-accuracy", params={"limit": 0})
        assert response.status_code == 422


class TestRecommendations:
    """Recommendation and learning path endpoints."""

    def test_recommendations(self, client):
        for index in range(3):
            client.post(f"{PREFIX}/attempts", json=attempt_payload(
                attempt_id=f"attempt-{index}", is_correct=False, score=10
            ))

        data = client.get(f"{PREFIX}/users/{TEST_USER_ID}/recommendations").json()["data"]
        assert data[0]["id"] == "weak-area-Stoichiometry"
        assert data[0]["type"] == "challenge"

    def test_learning_path(self, client):
        response = client.get(f"{PREFIX}/users/{TEST_USER_ID}/learning-path", params={"target_level": 5})
        assert response.status_code == 200

        data = response.json()["data"]
        assert data["target_level"] == 5
        assert len(data["path"]) == 6

    def test_learning_path_invalid_target(self, client):
        response = client.get(f"{PREFIX}/users/{TEST_USER_ID}/learning-path", params={"target_level": 0})
        assert response.status_code == 422


def test_version_conflict_maps_to_409(clock):
    repository = MagicMock(spec=StateRepository)
    repository.load.return_value = None
    repository.save.side_effect = ConflictError("user_state", TEST_USER_ID, 0, 1)

    service = ProgressionService(config=AppConfig(), clock=clock, state_repository=repository)
    client = TestClient(create_app(service))

    response = client.post(f"{PREFIX}/logins", json={"user_id": TEST_USER_ID})
    assert response.status_code == 409
    assert response.json()["code"] == "version_conflict"
