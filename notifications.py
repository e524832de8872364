"""
Realtime admin notifications

Every live websocket gets a ConnectionEntry in the hub's registry. On join the
user's role is looked up once; only entries tagged admin receive the
notifications fanned out for ratings, comments, new books and new borrows.
The emitting connection never receives its own broadcast.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from starlette.concurrency import run_in_threadpool

from schemas import Role

logger = logging.getLogger(__name__)

Sender = Callable[[dict], Awaitable[None]]

NOTIFICATIONS = {
    "newRating": "ratingNotification",
    "newComment": "commentNotification",
    "newBook": "bookNotification",
    "newBorrow": "borrowNotification",
}


@dataclass
class ConnectionEntry:
    connection_id: str
    send: Sender
    email: Optional[str] = None
    is_admin: bool = False
    profile: Dict[str, Any] = field(default_factory=dict)


class ConnectionRegistry:
    def __init__(self):
        self._entries: Dict[str, ConnectionEntry] = {}

    def add(self, entry: ConnectionEntry) -> None:
        self._entries[entry.connection_id] = entry

    def get(self, connection_id: str) -> Optional[ConnectionEntry]:
        return self._entries.get(connection_id)

    def remove(self, connection_id: str) -> Optional[ConnectionEntry]:
        return self._entries.pop(connection_id, None)

    def admins(self) -> List[ConnectionEntry]:
        return [e for e in self._entries.values() if e.is_admin]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._entries

    def __iter__(self) -> Iterator[ConnectionEntry]:
        return iter(list(self._entries.values()))


class NotificationHub:
    def __init__(self, role_lookup: Callable[[str], Optional[Role]]):
        self.registry = ConnectionRegistry()
        self._role_lookup = role_lookup

    def connect(self, connection_id: str, send: Sender) -> ConnectionEntry:
        entry = ConnectionEntry(connection_id=connection_id, send=send)
        self.registry.add(entry)
        logger.info(f"Connection opened: {connection_id}")
        return entry

    async def on_join(self, connection_id: str, data: dict, send: Optional[Sender] = None) -> ConnectionEntry:
        """Tag the connection with the joining user's role.

        The join always succeeds: an unknown email or a failed lookup leaves
        the connection tagged non-admin.
        """
        entry = self.registry.get(connection_id)
        if entry is None:
            if send is None:
                raise KeyError(connection_id)
            entry = self.connect(connection_id, send)

        email = (data or {}).get("email")
        if not isinstance(email, str) or not email.strip():
            email = None
        is_admin = False
        if email:
            try:
                role = await run_in_threadpool(self._role_lookup, email)
                is_admin = role == Role.ADMIN
            except Exception:
                logger.exception(f"Error verifying role for {email}, joining as non-admin")

        entry.email = email
        entry.is_admin = is_admin
        entry.profile = {k: v for k, v in (data or {}).items() if k != "email"}
        logger.info(f"User joined: {email} (admin={is_admin}) on {connection_id}")
        return entry

    async def on_event(self, sender_id: Optional[str], kind: str, payload: Any) -> int:
        """Fan out an event to every admin connection except the sender.

        Returns the number of connections the notification reached.
        """
        if kind not in NOTIFICATIONS:
            raise ValueError(f"Unknown event: {kind}")
        message = {"event": NOTIFICATIONS[kind], "data": payload}

        delivered = 0
        for entry in self.registry.admins():
            if entry.connection_id == sender_id:
                continue
            try:
                await entry.send(message)
                delivered += 1
            except Exception:
                logger.exception(f"Failed to deliver {message['event']} to {entry.connection_id}")
        logger.info(f"{kind} delivered to {delivered} admin connection(s)")
        return delivered

    def on_disconnect(self, connection_id: str) -> None:
        self.registry.remove(connection_id)
        logger.info(f"Connection closed: {connection_id}")
