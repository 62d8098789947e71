import mongomock
import pytest

import database
import identity
from verification import CollectionCheck


@pytest.fixture
def db(monkeypatch):
    handle = mongomock.MongoClient()["wastewise_test"]
    monkeypatch.setattr(database, "db", handle)
    return handle


@pytest.fixture
def reporter(db):
    return identity.ensure_user("alice@example.com", "Alice")


@pytest.fixture
def collector(db):
    return identity.ensure_user("bob@example.com", "Bob")


@pytest.fixture
def make_verifier():
    """Build a stand-in for the vision model that always gives the same answer."""
    def build(confidence, waste_type_match=True, quantity_match=True):
        calls = []

        def verifier(image, mime_type, waste_type, amount):
            calls.append((image, mime_type, waste_type, amount))
            return CollectionCheck(wasteTypeMatch=waste_type_match, quantityMatch=quantity_match,
                                   confidence=confidence)

        verifier.calls = calls
        return verifier
    return build
