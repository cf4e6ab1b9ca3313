import json
from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from config import TestingSettings
from exceptions import PersistenceIOError, PersistenceParseError
from main import create_app
from storage import AccountStorage


def as_decimal(value):
    return Decimal(str(value))


class BrokenSaveStorage(AccountStorage):
    def load(self):
        return []

    def save(self, accounts):
        raise PersistenceIOError("users.json", "read-only file system")


@pytest.fixture
def client(testing_settings):
    with TestClient(create_app(testing_settings)) as test_client:
        yield test_client


@pytest.fixture
def alice_and_bob(client):
    client.post("/register", json={"user_name": "alice", "name": "Alice", "starting_balance": 100})
    client.post("/register", json={"user_name": "bob", "name": "Bob", "starting_balance": 50})


def add_item(client, owner, name, price):
    response = client.post(f"/accounts/{owner}/items", json={"name": name, "price": price})
    assert response.status_code == 201
    return response.json()


class TestAccounts:
    """Test account endpoints."""

    def test_register_success(self, client):
        """Test successful account registration."""
        response = client.post("/register", json={
            "user_name": "alice",
            "name": "Alice",
            "starting_balance": 100
        })

        assert response.status_code == 201
        data = response.json()
        assert data["user_name"] == "alice"
        assert data["name"] == "Alice"
        assert as_decimal(data["balance"]) == Decimal("100")
        assert data["items"] == []

    def test_register_duplicate(self, client, alice_and_bob):
        """Test that registering a taken user name is a conflict."""
        response = client.post("/register", json={
            "user_name": "alice",
            "name": "Other Alice",
            "starting_balance": 1
        })

        assert response.status_code == 409
        assert response.json()["error_code"] == "ACCOUNT_ALREADY_EXISTS"
        assert client.get("/accounts/alice").json()["name"] == "Alice"

    def test_register_invalid_user_name(self, client):
        """Test rejection of a user name with invalid characters."""
        response = client.post("/register", json={
            "user_name": "alice smith!",
            "name": "Alice",
            "starting_balance": 100
        })

        assert response.status_code == 422

    def test_register_missing_fields(self, client):
        """Test registration with missing fields."""
        response = client.post("/register", json={"user_name": "alice"})

        assert response.status_code == 422

    def test_get_account(self, client, alice_and_bob):
        """Test fetching an existing account."""
        response = client.get("/accounts/bob")

        assert response.status_code == 200
        assert response.json()["user_name"] == "bob"

    def test_get_unknown_account(self, client):
        """Test fetching an account that does not exist."""
        response = client.get("/accounts/nobody")

        assert response.status_code == 404
        assert response.json()["error_code"] == "HTTP_404"

    def test_delete_account(self, client, alice_and_bob):
        """Test deleting an account together with its items."""
        item = add_item(client, "alice", "book", 30)

        response = client.delete("/accounts/alice")

        assert response.status_code == 200
        assert client.get("/accounts/alice").status_code == 404
        assert client.get(f"/items/{item['id']}").status_code == 404

    def test_delete_unknown_account(self, client):
        """Test deleting an account that does not exist."""
        response = client.delete("/accounts/nobody")

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"


class TestItems:
    """Test item endpoints."""

    def test_add_item(self, client, alice_and_bob):
        """Test adding an item to an account."""
        item = add_item(client, "alice", "book", 30)

        assert 0 <= item["id"] < 100
        assert item["name"] == "book"
        assert as_decimal(item["price"]) == Decimal("30")
        owned = client.get("/accounts/alice").json()["items"]
        assert [i["id"] for i in owned] == [item["id"]]

    def test_add_item_unknown_owner(self, client):
        """Test adding an item for an unknown account."""
        response = client.post("/accounts/nobody/items", json={"name": "book", "price": 30})

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"

    def test_add_item_negative_price(self, client, alice_and_bob):
        """Test rejection of a negative item price."""
        response = client.post("/accounts/alice/items", json={"name": "book", "price": -1})

        assert response.status_code == 422

    def test_list_items_with_sellers(self, client, alice_and_bob):
        """Test listing items with their sellers."""
        book = add_item(client, "alice", "book", 30)
        pen = add_item(client, "bob", "pen", 2)

        response = client.get("/items")

        assert response.status_code == 200
        listed = {i["id"]: i["seller"] for i in response.json()}
        assert listed == {book["id"]: "alice", pen["id"]: "bob"}
        assert [i["id"] for i in response.json()] == sorted(listed)

    def test_get_unknown_item(self, client):
        """Test fetching an item that does not exist."""
        response = client.get("/items/999")

        assert response.status_code == 404


class TestBuy:
    """Test the buy endpoint."""

    def test_buy_success(self, client, alice_and_bob):
        """Test a successful purchase."""
        book = add_item(client, "alice", "book", 30)

        response = client.post("/buy", json={"buyer": "bob", "item_id": book["id"]})

        assert response.status_code == 200
        bob = response.json()
        assert as_decimal(bob["balance"]) == Decimal("20")
        assert [i["id"] for i in bob["items"]] == [book["id"]]
        alice = client.get("/accounts/alice").json()
        assert as_decimal(alice["balance"]) == Decimal("130")
        assert alice["items"] == []
        assert client.get(f"/items/{book['id']}").json()["seller"] == "bob"

    def test_buy_own_item(self, client, alice_and_bob):
        """Test that buying your own item is rejected."""
        book = add_item(client, "alice", "book", 30)

        response = client.post("/buy", json={"buyer": "alice", "item_id": book["id"]})

        assert response.status_code == 400
        assert response.json()["error_code"] == "SELF_PURCHASE"

    def test_buy_insufficient_funds(self, client, alice_and_bob):
        """Test a purchase the buyer cannot afford."""
        car = add_item(client, "alice", "car", 75)

        response = client.post("/buy", json={"buyer": "bob", "item_id": car["id"]})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INSUFFICIENT_FUNDS"
        assert "Insufficient funds" in response.json()["detail"]

    def test_buy_unknown_item(self, client, alice_and_bob):
        """Test buying an item that does not exist."""
        response = client.post("/buy", json={"buyer": "bob", "item_id": 999})

        assert response.status_code == 404
        assert response.json()["error_code"] == "ITEM_NOT_FOUND"

    def test_buy_unknown_buyer(self, client):
        """Test buying with an unknown buyer."""
        response = client.post("/buy", json={"buyer": "nobody", "item_id": 1})

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"

    def test_buy_malformed_json(self, client):
        """Test buying with a malformed JSON body."""
        response = client.post(
            "/buy",
            content="{'buyer': 'bob'",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 422

    def test_buy_rejection_is_logged(self, client):
        """Test that a rejected purchase is logged."""
        with patch('services.logger') as mock_logger:
            response = client.post("/buy", json={"buyer": "nobody", "item_id": 1})

        assert response.status_code == 404
        mock_logger.warning.assert_called()


class TestPersistence:
    """Test the API against its backing file."""

    def test_state_survives_restart(self, testing_settings, db_path):
        """Test that ledger state survives an application restart."""
        with TestClient(create_app(testing_settings)) as first:
            first.post("/register", json={"user_name": "alice", "name": "Alice", "starting_balance": 100})
            first.post("/register", json={"user_name": "bob", "name": "Bob", "starting_balance": 50})
            book = add_item(first, "alice", "book", 30)
            first.post("/buy", json={"buyer": "bob", "item_id": book["id"]})

        with TestClient(create_app(testing_settings)) as second:
            bob = second.get("/accounts/bob").json()
            assert as_decimal(bob["balance"]) == Decimal("20")
            assert [i["id"] for i in bob["items"]] == [book["id"]]
            assert second.get(f"/items/{book['id']}").json()["seller"] == "bob"

    def test_first_run_creates_database(self, client, db_path):
        """Test that the first startup creates an empty database."""
        assert json.loads(db_path.read_text()) == []

    def test_corrupt_database_aborts_startup(self, testing_settings, db_path):
        """Test that a corrupt database aborts startup."""
        db_path.write_text("not json")

        with pytest.raises(PersistenceParseError):
            with TestClient(create_app(testing_settings)):
                pass

    def test_save_failure_is_internal_error(self, testing_settings):
        """Test that a failed save is reported as an internal error."""
        app = create_app(testing_settings, storage=BrokenSaveStorage())

        with TestClient(app, raise_server_exceptions=False) as broken:
            response = broken.post("/register", json={
                "user_name": "alice",
                "name": "Alice",
                "starting_balance": 100
            })

            assert response.status_code == 500
            assert broken.get("/accounts/alice").status_code == 404


class TestRateLimiting:
    """Test rate limits on the register and buy endpoints."""

    def register_many(self, client, count):
        return [
            client.post("/register", json={
                "user_name": f"user{n}",
                "name": "User",
                "starting_balance": 1
            }).status_code
            for n in range(count)
        ]

    def test_limit_follows_app_settings(self, db_path):
        """Test that the limit passed to create_app is the one enforced."""
        settings = TestingSettings(database_path=str(db_path), rate_limit_per_minute=2)

        with TestClient(create_app(settings)) as limited:
            statuses = self.register_many(limited, 3)

        assert statuses == [201, 201, 429]

    def test_limits_are_kept_per_app(self, tmp_path):
        """Test that one app's exhausted limit does not affect another app."""
        strict = TestingSettings(database_path=str(tmp_path / "strict.json"), rate_limit_per_minute=1)
        relaxed = TestingSettings(database_path=str(tmp_path / "relaxed.json"))

        with TestClient(create_app(strict)) as strict_client:
            assert self.register_many(strict_client, 2) == [201, 429]

        with TestClient(create_app(relaxed)) as relaxed_client:
            assert self.register_many(relaxed_client, 3) == [201, 201, 201]


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self, client, alice_and_bob):
        """Test health check endpoint."""
        add_item(client, "alice", "book", 30)

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["accounts_count"] == 2
        assert data["items_count"] == 1

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data
