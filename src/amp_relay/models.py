"""SQLModel tables backing the agent directory, inbox, relay queue, replay guard and peer directory."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Column, Index, UniqueConstraint, func
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel

from .utils import iso_utc, utcnow_naive


class Agent(SQLModel, table=True):
    __tablename__ = "agents"
    __table_args__ = (UniqueConstraint("name", name="uq_agent_name"),)

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(index=True, max_length=128)
    alias: Optional[str] = Field(default=None, max_length=128)
    session_name: Optional[str] = Field(default=None, max_length=256)
    address: str = Field(index=True, max_length=512)
    public_key: str = Field(default="", max_length=128)
    api_key_hash: str = Field(index=True, max_length=80)
    online: bool = Field(default=False)
    last_seen_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow_naive)


# Names resolve case-insensitively; keep them unique the same way
Index("uq_agent_name_lower", func.lower(Agent.__table__.c.name), unique=True)


class InboxMessage(SQLModel, table=True):
    """A message handed to a recipient by the local delivery channel."""

    __tablename__ = "inbox_messages"
    __table_args__ = (
        UniqueConstraint("agent_id", "message_id", name="uq_inbox_agent_message"),
        Index("idx_inbox_agent_delivered", "agent_id", "delivered_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True, max_length=64)
    message_id: str = Field(max_length=128)
    sender: str = Field(max_length=512)
    subject: str = Field(max_length=512)
    priority: str = Field(default="normal", max_length=16)
    trust: Optional[str] = Field(default=None, max_length=16)
    envelope: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    sender_public_key: str = Field(default="", max_length=128)
    delivered_at: datetime = Field(default_factory=utcnow_naive)
    read_at: Optional[datetime] = Field(default=None)


class RelayEntry(SQLModel, table=True):
    """A message waiting for pickup by a recipient that was not reachable."""

    __tablename__ = "relay_entries"
    __table_args__ = (
        UniqueConstraint("recipient_key", "message_id", name="uq_relay_recipient_message"),
        Index("idx_relay_recipient_queued", "recipient_key", "queued_at"),
        Index("idx_relay_expires", "expires_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    recipient_key: str = Field(index=True, max_length=256)
    message_id: str = Field(max_length=128)
    envelope: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    sender_public_key: str = Field(default="", max_length=128)
    queued_at: datetime = Field(default_factory=utcnow_naive)
    expires_at: datetime
    attempts: int = Field(default=0)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "envelope": self.envelope,
            "payload": self.payload,
            "sender_public_key": self.sender_public_key or None,
            "queued_at": iso_utc(self.queued_at),
            "expires_at": iso_utc(self.expires_at),
            "attempts": self.attempts,
        }


class ReplaySeen(SQLModel, table=True):
    __tablename__ = "replay_seen"

    message_id: str = Field(primary_key=True, max_length=256)
    first_seen_at: datetime = Field(default_factory=utcnow_naive, index=True)


class PropagationRecord(SQLModel, table=True):
    __tablename__ = "propagation_records"

    propagation_id: str = Field(primary_key=True, max_length=128)
    seen_at: datetime = Field(default_factory=utcnow_naive, index=True)


class PeerHost(SQLModel, table=True):
    __tablename__ = "peer_hosts"

    id: str = Field(primary_key=True, max_length=128)
    name: str = Field(max_length=256)
    url: str = Field(index=True, max_length=512)
    aliases: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False, server_default="[]"))
    description: str = Field(default="", max_length=500)
    enabled: bool = Field(default=True)
    synced_at: datetime = Field(default_factory=utcnow_naive)
    sync_source: str = Field(default="peer-registration", max_length=256)

    def identity(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "description": self.description,
        }
