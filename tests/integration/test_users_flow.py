"""
Integration tests for the users service flow.

The application runs with its real lifespan against a file-backed SQLite
database, so data written by one application instance is visible to the next.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text

from service_users.app.main import UsersService
from shared.test_helpers import MockTokenGenerator, TestDataFactory, get_test_config


def seed_clients(database_path):
    """Insert the test clients with a plain synchronous engine."""
    engine = create_engine(f"sqlite:///{database_path}")
    with engine.begin() as conn:
        for data in TestDataFactory.create_test_clients():
            conn.execute(
                text("INSERT INTO clients (name, email, created_at) VALUES (:name, :email, CURRENT_TIMESTAMP)"),
                data,
            )
    engine.dispose()


class TestUsersFlow:
    """End-to-end flow through the users API."""

    @pytest.fixture
    def database_path(self, tmp_path):
        return tmp_path / "users.db"

    @pytest.fixture
    def config(self, database_path):
        return get_test_config(database_url=f"sqlite+aiosqlite:///{database_path}")

    @pytest.fixture
    def headers(self):
        caller = TestDataFactory.create_test_callers()["user"]
        return MockTokenGenerator().auth_headers(caller)

    def test_complete_user_lifecycle(self, config, database_path, headers):
        """Create, read, update and delete a user across the whole API."""
        with TestClient(UsersService(config).app) as client:
            seed_clients(database_path)

            # 1. Nothing yet
            assert client.get("/api/users", headers=headers).json() == []

            # 2. Create
            created = client.post(
                "/api/clients/1/users",
                json=TestDataFactory.create_user_payload(1),
                headers=headers,
            )
            assert created.status_code == 201
            user = created.json()
            location = created.headers["Location"]
            assert location.endswith(f"/api/users/{user['id']}")

            # 3. Read back through the Location header and the list
            assert client.get(location, headers=headers).json() == user
            assert [item["id"] for item in client.get("/api/users", headers=headers).json()] == [user["id"]]

            # 4. Update and observe the change immediately
            updated = client.put(
                f"/api/clients/2/users/{user['id']}",
                json={"email": "renamed@example.com", "password": "rotated"},
                headers=headers,
            )
            assert updated.status_code == 204
            detail = client.get(location, headers=headers).json()
            assert detail["email"] == "renamed@example.com"
            assert detail["client"]["name"] == "Northwind Mobile"

            # 5. Delete
            deleted = client.delete(f"/api/clients/2/users/{user['id']}", headers=headers)
            assert deleted.status_code == 204
            assert client.get(location, headers=headers).status_code == 404
            assert client.get("/api/users", headers=headers).json() == []

    def test_data_survives_restart(self, config, database_path, headers):
        """Users persist in the database; the memory cache starts empty."""
        with TestClient(UsersService(config).app) as client:
            seed_clients(database_path)
            for index in range(1, 4):
                response = client.post(
                    "/api/clients/1/users",
                    json=TestDataFactory.create_user_payload(index),
                    headers=headers,
                )
                assert response.status_code == 201

        with TestClient(UsersService(config).app) as client:
            page = client.get("/api/users", params={"page": 1, "limit": 2}, headers=headers)
            assert [item["email"] for item in page.json()] == ["user1@example.com", "user2@example.com"]

            stats = client.get("/stats").json()["cache"]
            assert stats["misses"] == 1
            assert stats["hits"] == 0

    def test_health_reports_dependencies(self, config):
        with TestClient(UsersService(config).app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["dependencies"] == {"database": "ok", "cache": "ok"}
