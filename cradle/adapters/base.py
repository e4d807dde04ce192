"""Collaborator contracts: the remote event store and the realtime change feed."""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable
import uuid

from pydantic import BaseModel, Field

from ..event_models import CareEvent, CareEventDraft


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeNotification(BaseModel):
    """Opaque "something changed" signal for one owner's ledger."""
    owner_id: str
    kind: ChangeKind = ChangeKind.INSERT
    event_id: str | None = None
    correlation_id: str | None = None
    origin: str | None = Field(default=None, description="Device/session that made the change")


class ChangeFilter(BaseModel):
    owner_id: str

    def matches(self, notification: ChangeNotification) -> bool:
        return notification.owner_id == self.owner_id


ChangeHandler = Callable[[ChangeNotification], Awaitable[None]]


class Subscription:
    """Handle returned by ChangeFeedAdapter.subscribe; pass it back to unsubscribe."""

    def __init__(self, filter: ChangeFilter, handler: ChangeHandler):
        self.id = str(uuid.uuid4())
        self.filter = filter
        self.handler = handler
        self.active = True

    def __repr__(self) -> str:
        return f"Subscription(id={self.id!r}, owner_id={self.filter.owner_id!r}, active={self.active})"


class EventStoreAdapter(ABC):
    """Abstract interface for the durable care event store."""

    @abstractmethod
    async def insert(self, draft: CareEventDraft) -> CareEvent:
        """
        Persist a draft.

        Args:
            draft: The event to persist

        Returns:
            The confirmed event with server id and created_at. Inserting a
            correlation_id that already exists returns the existing row.

        Raises:
            Any exception on constraint, auth or transport failure
        """
        pass

    @abstractmethod
    async def list(self, owner_id: str) -> list[CareEvent]:
        """
        Fetch an owner's full ledger in insertion order.

        Raises:
            Any exception on transport failure (never an empty list instead)
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is healthy and accessible.

        Returns:
            True if backend is healthy, False otherwise
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


class ChangeFeedAdapter(ABC):
    """Abstract interface for the realtime push channel."""

    @abstractmethod
    async def subscribe(self, filter: ChangeFilter, handler: ChangeHandler) -> Subscription:
        """Open a channel; handler is awaited for every matching notification."""
        pass

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Close a channel. Safe to call more than once."""
        pass

    @abstractmethod
    async def publish(self, notification: ChangeNotification) -> None:
        """Announce a change to every matching subscriber."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def close(self) -> None:
        return None
