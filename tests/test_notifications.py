import asyncio

import pytest

from notifications import ConnectionRegistry, NotificationHub
from schemas import Role

ROLES = {"admin@example.com": Role.ADMIN, "alice@example.com": Role.USER}


class Inbox:
    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)


def lookup(email):
    return ROLES.get(email)


def failing_lookup(email):
    raise RuntimeError("database unreachable")


def run(coro):
    return asyncio.run(coro)


def join(hub, connection_id, email):
    inbox = Inbox()
    hub.connect(connection_id, inbox)
    run(hub.on_join(connection_id, {"email": email, "name": "someone"}))
    return inbox


def test_join_admin_is_tagged_admin():
    hub = NotificationHub(lookup)
    join(hub, "c1", "admin@example.com")

    entry = hub.registry.get("c1")
    assert entry.email == "admin@example.com"
    assert entry.is_admin is True
    assert entry.profile == {"name": "someone"}


def test_join_regular_and_unknown_users_are_not_admin():
    hub = NotificationHub(lookup)
    join(hub, "c1", "alice@example.com")
    join(hub, "c2", "stranger@example.com")

    assert hub.registry.get("c1").is_admin is False
    assert hub.registry.get("c2").is_admin is False


def test_join_degrades_to_non_admin_when_lookup_fails():
    hub = NotificationHub(failing_lookup)
    join(hub, "c1", "admin@example.com")

    entry = hub.registry.get("c1")
    assert entry.is_admin is False
    assert entry.email == "admin@example.com"


def test_join_without_email_is_not_admin():
    hub = NotificationHub(lookup)
    hub.connect("c1", Inbox())
    run(hub.on_join("c1", {}))
    assert hub.registry.get("c1").is_admin is False


def test_join_registers_unknown_connection_when_sender_given():
    hub = NotificationHub(lookup)
    run(hub.on_join("c9", {"email": "admin@example.com"}, send=Inbox()))
    assert "c9" in hub.registry
    assert hub.registry.get("c9").is_admin is True


def test_rating_reaches_only_admin_connections():
    hub = NotificationHub(lookup)
    admin_inbox = join(hub, "admin-conn", "admin@example.com")
    user_inbox = join(hub, "user-conn", "alice@example.com")

    payload = {"bookId": "b1", "rating": 4}
    delivered = run(hub.on_event("user-conn", "newRating", payload))

    assert delivered == 1
    assert admin_inbox.messages == [{"event": "ratingNotification", "data": payload}]
    assert user_inbox.messages == []


@pytest.mark.parametrize("kind,notification", [
    ("newRating", "ratingNotification"),
    ("newComment", "commentNotification"),
    ("newBook", "bookNotification"),
    ("newBorrow", "borrowNotification"),
])
def test_event_kinds_map_to_notifications(kind, notification):
    hub = NotificationHub(lookup)
    admin_inbox = join(hub, "admin-conn", "admin@example.com")

    run(hub.on_event(None, kind, {"x": 1}))

    assert admin_inbox.messages == [{"event": notification, "data": {"x": 1}}]


def test_sender_never_receives_its_own_broadcast():
    hub = NotificationHub(lookup)
    first = join(hub, "admin-1", "admin@example.com")
    second = join(hub, "admin-2", "admin@example.com")

    delivered = run(hub.on_event("admin-1", "newComment", {"text": "nice"}))

    assert delivered == 1
    assert first.messages == []
    assert second.messages == [{"event": "commentNotification", "data": {"text": "nice"}}]


def test_event_before_join_misses_connection():
    hub = NotificationHub(lookup)
    inbox = Inbox()
    hub.connect("c1", inbox)

    run(hub.on_event(None, "newBook", {"title": "Dune"}))
    run(hub.on_join("c1", {"email": "admin@example.com"}))

    assert inbox.messages == []


def test_failed_delivery_does_not_stop_fan_out():
    hub = NotificationHub(lookup)

    async def broken(message):
        raise ConnectionError("socket closed")

    hub.connect("broken", broken)
    run(hub.on_join("broken", {"email": "admin@example.com"}))
    healthy = join(hub, "healthy", "admin@example.com")

    delivered = run(hub.on_event(None, "newBorrow", {"bookId": "b1"}))

    assert delivered == 1
    assert healthy.messages == [{"event": "borrowNotification", "data": {"bookId": "b1"}}]


def test_unknown_event_kind():
    hub = NotificationHub(lookup)
    with pytest.raises(ValueError):
        run(hub.on_event(None, "newShelf", {}))


def test_disconnect_forgets_entry_and_rejoin_resolves_fresh():
    roles = {"alice@example.com": Role.USER}
    hub = NotificationHub(roles.get)
    join(hub, "c1", "alice@example.com")
    assert hub.registry.get("c1").is_admin is False

    hub.on_disconnect("c1")
    assert "c1" not in hub.registry
    hub.on_disconnect("c1")

    roles["alice@example.com"] = Role.ADMIN
    join(hub, "c2", "alice@example.com")
    assert hub.registry.get("c2").is_admin is True


def test_disconnected_admin_receives_nothing():
    hub = NotificationHub(lookup)
    inbox = join(hub, "c1", "admin@example.com")
    hub.on_disconnect("c1")

    assert run(hub.on_event(None, "newRating", {})) == 0
    assert inbox.messages == []


def test_registry_admins_and_len():
    registry = ConnectionRegistry()
    hub = NotificationHub(lookup)
    hub.registry = registry
    join(hub, "a", "admin@example.com")
    join(hub, "u", "alice@example.com")

    assert len(registry) == 2
    assert [e.connection_id for e in registry.admins()] == ["a"]
    assert sorted(e.connection_id for e in registry) == ["a", "u"]


@pytest.mark.parametrize("email", [{"$ne": None}, ["admin@example.com"], 42, "   "])
def test_join_with_non_string_email_skips_lookup(email):
    calls = []

    def recording_lookup(value):
        calls.append(value)
        return Role.ADMIN

    hub = NotificationHub(recording_lookup)
    hub.connect("c1", Inbox())
    run(hub.on_join("c1", {"email": email}))

    assert calls == []
    assert hub.registry.get("c1").is_admin is False
