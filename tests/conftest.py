import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from auth import get_verifier
from errors import Unauthorized

ADMIN = "admin@example.com"
ALICE = "alice@example.com"
BOB = "bob@example.com"


class FakeVerifier:
    """Stands in for Firebase: known tokens map to their claims."""

    def __init__(self, tokens):
        self.tokens = tokens

    def verify(self, token: str) -> dict:
        if token not in self.tokens:
            raise Unauthorized("Unauthorized access! Invalid token.")
        return self.tokens[token]


@pytest.fixture
def mongo(monkeypatch):
    mdb = mongomock.MongoClient().db
    monkeypatch.setattr(database, "db", mdb)
    return mdb


@pytest.fixture
def verifier():
    fake = FakeVerifier({
        "admin-token": {"email": ADMIN, "uid": "a1"},
        "alice-token": {"email": ALICE, "uid": "u1"},
        "bob-token": {"email": BOB, "uid": "u2"},
        "no-email-token": {"uid": "anon"},
    })
    main.app.dependency_overrides[get_verifier] = lambda: fake
    yield fake
    main.app.dependency_overrides.clear()


@pytest.fixture
def users(mongo):
    mongo["users"].insert_many([
        {"email": ADMIN, "name": "Admin", "role": "admin"},
        {"email": ALICE, "name": "Alice", "role": "user"},
        {"email": BOB, "name": "Bob", "role": "user"},
    ])
    return mongo["users"]


@pytest.fixture
def client(mongo, verifier):
    main.hub.registry.clear()
    # one event loop for every request and websocket of the test
    with TestClient(main.app) as test_client:
        yield test_client
    main.hub.registry.clear()


@pytest.fixture
def bearer():
    def _headers(token):
        return {"Authorization": f"Bearer {token}"}
    return _headers
