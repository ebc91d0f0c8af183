"""
Realtime broadcast gateway: auction rooms and per-connection delivery.

Every connection owns one FIFO queue and the transport that registered it
(WebSocket handler or SSE generator) is its only reader, so a member sees
events in exactly the order they were broadcast. A member joining a room is
sent the auction snapshot first; anything broadcast to the room while that
snapshot is being read is held back and delivered right after it.

Membership is in-process only. Events are fire-and-forget: a member that
drops simply stops receiving and re-syncs from a fresh snapshot on rejoin.
"""

import asyncio
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from models.operations.auction_events import AuctionEvent, presence_event
from models.operations.auctions import auction_snapshot_event
from utils import log

logger = log.get_logger(__name__)

Message = Dict[str, Any]
SnapshotLoader = Callable[[str], Awaitable[AuctionEvent]]

MAX_QUEUED_MESSAGES = 1000


class Connection:
    def __init__(self, connection_id: str, user_id: Optional[str] = None, max_queued: int = MAX_QUEUED_MESSAGES):
        self.id = connection_id
        self.user_id = user_id
        self.rooms: Set[str] = set()
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queued)
        # auction_id -> messages held back until that room's snapshot is queued
        self._joining: Dict[str, List[Message]] = {}

    def enqueue(self, message: Message) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    def deliver(self, auction_id: str, message: Message) -> bool:
        if auction_id in self._joining:
            self._joining[auction_id].append(message)
            return True
        return self.enqueue(message)

    def hold(self, auction_id: str) -> None:
        self._joining[auction_id] = []

    def release(self, auction_id: str) -> List[Message]:
        return self._joining.pop(auction_id, [])

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake the reader even if the queue is full
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def messages(self) -> AsyncIterator[Message]:
        """Yield queued messages in order until the connection is closed."""
        while True:
            message = await self._queue.get()
            if message is None:
                return
            yield message

    def pending(self) -> int:
        return self._queue.qsize()


class BroadcastGateway:
    def __init__(self, snapshot_loader: Optional[SnapshotLoader] = None):
        self._snapshot_loader = snapshot_loader or auction_snapshot_event
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register(self, connection_id: Optional[str] = None, user_id: Optional[str] = None) -> Connection:
        connection_id = connection_id or uuid.uuid4().hex
        if connection_id in self._connections:
            raise ValueError(f"Connection {connection_id} is already registered")
        conn = Connection(connection_id, user_id)
        self._connections[connection_id] = conn
        logger.debug(f"Connection {connection_id} registered (user={user_id})")
        return conn

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def disconnect(self, connection_id: str) -> None:
        """Drop a connection and all of its memberships. Unknown ids are ignored."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        rooms = list(conn.rooms)
        for auction_id in rooms:
            self._remove_member(auction_id, connection_id)
        conn.rooms.clear()
        conn.close()
        for auction_id in rooms:
            self._announce_presence(auction_id)
        logger.debug(f"Connection {connection_id} disconnected ({len(rooms)} rooms)")

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def join(self, connection_id: str, auction_id: str) -> None:
        """Add a connection to an auction room and queue the snapshot for it.

        Raises KeyError for an unknown connection and lets AuctionNotFound
        from the snapshot loader propagate, leaving membership untouched.
        """
        conn = self._connections[connection_id]
        if auction_id in conn.rooms:
            return

        conn.hold(auction_id)
        conn.rooms.add(auction_id)
        self._rooms.setdefault(auction_id, set()).add(connection_id)
        try:
            snapshot = await self._snapshot_loader(auction_id)
        except Exception:
            conn.release(auction_id)
            conn.rooms.discard(auction_id)
            self._remove_member(auction_id, connection_id)
            raise

        held = conn.release(auction_id)
        if conn.closed:
            return
        conn.enqueue(snapshot.to_wire())
        for message in held:
            conn.enqueue(message)
        self._announce_presence(auction_id)

    def leave(self, connection_id: str, auction_id: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is None or auction_id not in conn.rooms:
            return
        conn.rooms.discard(auction_id)
        conn.release(auction_id)
        self._remove_member(auction_id, connection_id)
        self._announce_presence(auction_id)

    def room_size(self, auction_id: str) -> int:
        return len(self._rooms.get(auction_id, ()))

    def _remove_member(self, auction_id: str, connection_id: str) -> None:
        members = self._rooms.get(auction_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[auction_id]

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def broadcast(self, auction_id: str, event: Union[AuctionEvent, Message]) -> int:
        """Queue *event* for every member of the room. Returns the number of members reached."""
        message = event.to_wire() if isinstance(event, AuctionEvent) else event
        delivered = 0
        overflowed = []
        for connection_id in list(self._rooms.get(auction_id, ())):
            conn = self._connections.get(connection_id)
            if conn is None:
                continue
            if conn.deliver(auction_id, message):
                delivered += 1
            else:
                overflowed.append(connection_id)

        for connection_id in overflowed:
            logger.warning(f"Connection {connection_id} is not keeping up, dropping it")
            self.disconnect(connection_id)
        return delivered

    def broadcast_all(self, events: Iterable[AuctionEvent]) -> None:
        for event in events:
            self.broadcast(event.auction_id, event)

    def send(self, connection_id: str, message: Message) -> bool:
        """Queue a direct reply (bid result, error) for a single connection."""
        conn = self._connections.get(connection_id)
        return conn.enqueue(message) if conn else False

    def _announce_presence(self, auction_id: str) -> None:
        if auction_id in self._rooms:
            self.broadcast(auction_id, presence_event(auction_id, self.room_size(auction_id)))


_gateway: Optional[BroadcastGateway] = None


def get_gateway() -> BroadcastGateway:
    global _gateway
    if _gateway is None:
        _gateway = BroadcastGateway()
    return _gateway
