"""Tests for the HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from ablib.main import create_app
from conftest import FakeRemoteAdapter, make_experiment

USER = {"id": "user-123", "email": "test@example.com"}


@pytest.fixture
def remote():
    return FakeRemoteAdapter(experiments=[make_experiment("exp-key")])


@pytest.fixture
def api(settings, remote):
    with TestClient(create_app(settings=settings, adapter=remote)) as client:
        yield client


class TestUsers:
    def test_initialize_user(self, api):
        response = api.post("/users", json=USER)

        assert response.status_code == 201
        body = response.json()
        assert [(v["experiment_key"], v["variant"]) for v in body] == [("exp-key", "B")]

    def test_invalid_identity(self, api):
        response = api.post("/users", json={"id": "", "email": "x"})
        assert response.status_code == 422

    def test_update_before_initialize(self, api):
        response = api.put("/users", json=USER)
        assert response.status_code == 409

    def test_update_with_another_id(self, api):
        api.post("/users", json=USER)

        response = api.put("/users", json={"id": "someone-else", "email": ""})

        assert response.status_code == 409
        assert "mismatch" in response.json()["detail"]

    def test_update_and_reassign(self, api):
        api.post("/users", json=USER)

        response = api.put(
            "/users", params={"reassign_variant": "true"}, json={**USER, "email": "new@example.com"}
        )

        assert response.status_code == 204


class TestVariants:
    def test_requires_initialized_user(self, api):
        response = api.get("/variants/exp-key")
        assert response.status_code == 409

    def test_get_variant(self, api):
        api.post("/users", json=USER)

        response = api.get("/variants/exp-key")

        assert response.status_code == 200
        assert response.json() == {"experiment_key": "exp-key", "variant": "B"}

    def test_unknown_experiment(self, api):
        api.post("/users", json=USER)

        response = api.get("/variants/nope")

        assert response.json() == {"experiment_key": "nope", "variant": None}


class TestExperiments:
    def test_list(self, api):
        response = api.get("/experiments")

        assert response.status_code == 200
        assert [e["key"] for e in response.json()["experiments"]] == ["exp-key"]

    def test_get_one(self, api):
        assert api.get("/experiments/exp-key").json()["splits"] == {"A": 0.5, "B": 0.5}

    def test_not_found(self, api):
        response = api.get("/experiments/nope")
        assert response.status_code == 404


class TestSync:
    def test_flush_delivers_queued_writes(self, api, remote):
        remote.failing = {"save_user", "save_variant"}
        assert api.post("/users", json=USER).status_code == 201
        assert api.get("/sync").json()["pending"] == 2

        remote.failing = set()
        response = api.post("/sync/flush")

        assert response.status_code == 200
        assert response.json() == {"pending": 0}
        assert remote.variants[("user-123", "exp-key")].variant == "B"


class TestAuth:
    @pytest.fixture
    def api(self, settings, remote):
        secured = settings.model_copy(update={"TOKENS": ["secret-token"]})
        with TestClient(create_app(settings=secured, adapter=remote)) as client:
            yield client

    def test_missing_token(self, api):
        response = api.get("/experiments")
        assert response.status_code == 401

    def test_wrong_token(self, api):
        response = api.get("/experiments", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_valid_token(self, api):
        response = api.get("/experiments", headers={"Authorization": "Bearer secret-token"})
        assert response.status_code == 200
