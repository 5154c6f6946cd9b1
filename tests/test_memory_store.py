import pytest

from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


def test_email_is_normalized_and_unique(store):
    created = store.create("  Alice@Example.com ", "Alice", password_hash="h")

    assert created.email == "alice@example.com"
    assert store.find_by_email("ALICE@example.com").id == created.id
    with pytest.raises(ConstraintViolation):
        store.create("alice@EXAMPLE.com", "Other", password_hash="h")


def test_returned_identity_is_a_copy(store):
    created = store.create("alice@example.com", "Alice", password_hash="h")
    created.name = "Mallory"

    assert store.find_by_id(created.id).name == "Alice"


def test_update_fields_and_timestamp(store):
    created = store.create("alice@example.com", "Alice", password_hash="h")

    updated = store.update(created.id, {"name": "Alice B", "password_hash": "h2"})

    assert updated.name == "Alice B"
    assert updated.password_hash == "h2"
    assert updated.updated_at >= created.updated_at


def test_update_cannot_steal_email(store):
    store.create("alice@example.com", "Alice", password_hash="h")
    bob = store.create("bob@example.com", "Bob", password_hash="h")

    with pytest.raises(ConstraintViolation):
        store.update(bob.id, {"email": "ALICE@example.com"})


def test_clearing_hash_requires_a_link(store):
    local = store.create("alice@example.com", "Alice", password_hash="h")
    with pytest.raises(ConstraintViolation):
        store.update(local.id, {"password_hash": None})

    linked = store.create("bob@example.com", "Bob", password_hash="h", link=("google", "g-1"))
    assert store.update(linked.id, {"password_hash": None}).password_hash is None


def test_update_unknown_user_returns_none(store):
    assert store.update("missing", {"name": "x"}) is None


def test_delete_drops_links(store):
    linked = store.create("bob@example.com", link=("google", "g-1"))

    assert store.delete(linked.id) is True
    assert store.delete(linked.id) is False
    assert store.find_by_link("google", "g-1") is None
