"""Room registry: the thin CRUD layer around lockable rooms."""

from __future__ import annotations

from allocra.domain.errors import InvalidRoom, RoomNotFound
from allocra.domain.models import Room, RoomKind, RoomState
from allocra.repos.base import AllocationStore

SEED_ROOM_NAMES = ["NODE-AX-01", "NODE-AX-02", "NODE-AX-03", "NODE-AX-04", "NODE-AX-05"]


class RoomService:
    def __init__(self, store: AllocationStore) -> None:
        self.store = store

    @staticmethod
    def _validate(name: str, capacity: int) -> None:
        if not name.strip():
            raise InvalidRoom("room name must not be empty")
        if capacity <= 0:
            raise InvalidRoom("capacity must be positive")

    def create_room(
        self,
        name: str,
        capacity: int,
        kind: RoomKind = RoomKind.SHARED,
        state: RoomState = RoomState.ONLINE,
    ) -> Room:
        self._validate(name, capacity)
        return self.store.add_room(name.strip(), capacity, kind, state)

    def list_rooms(self) -> list[Room]:
        return self.store.list_rooms()

    def get_room(self, room_id: int) -> Room:
        room = self.store.get_room(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    def update_room(
        self, room_id: int, name: str, capacity: int, kind: RoomKind, state: RoomState
    ) -> Room:
        self._validate(name, capacity)
        return self.store.update_room(room_id, name.strip(), capacity, kind, state)

    def delete_room(self, room_id: int) -> None:
        self.get_room(room_id)
        self.store.delete_room(room_id)


def seed_rooms(service: RoomService, capacity: int = 64) -> list[Room]:
    """Create the default node rooms that do not exist yet; returns all of them."""
    existing = {room.name: room for room in service.list_rooms()}
    rooms = []
    for name in SEED_ROOM_NAMES:
        room = existing.get(name) or service.create_room(name, capacity)
        rooms.append(room)
    return rooms
