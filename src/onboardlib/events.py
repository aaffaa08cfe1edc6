"""Event models published on the pipeline's event stream.

Each event serialises to one JSON object with a ``type`` discriminator and
camelCase keys; null fields are omitted.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from onboardlib.models import ProcessingState
from onboardlib.schemas import CamelModel, Entity, Relationship, RunSummary


class Event(CamelModel):
    """Base class for every event."""

    type: str

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ConnectedEvent(Event):
    type: Literal["connected"] = "connected"


class PingEvent(Event):
    type: Literal["ping"] = "ping"


class StateChangeEvent(Event):
    type: Literal["state_change"] = "state_change"
    previous_state: ProcessingState
    new_state: ProcessingState


class ProgressEvent(Event):
    """Point-in-time progress snapshot of the active run."""

    type: Literal["progress"] = "progress"
    state: ProcessingState
    current_day: str | None = None
    emails_processed: int = 0
    total_emails: int = 0
    entities_found: int = 0
    relationships_found: int = 0
    current_batch: int = 0
    total_batches: int = 0


class EmailSummary(CamelModel):
    id: str
    subject: str
    sender: str = Field(alias="from")
    to: list[str]
    date: str
    snippet: str


class EmailEvent(Event):
    type: Literal["email"] = "email"
    email: EmailSummary
    entities: list[Entity] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    is_spam: bool = False
    spam_score: float = 0.0


class RelationshipEvent(Event):
    type: Literal["relationship"] = "relationship"
    relationship: Relationship
    source_email: str


class ErrorEvent(Event):
    type: Literal["error"] = "error"
    message: str
    details: str | None = None


class CompleteEvent(Event):
    type: Literal["complete"] = "complete"
    summary: RunSummary


class ContactSyncEvent(Event):
    type: Literal["contact_sync"] = "contact_sync"
    entity_value: str
    action: str
    resource_name: str | None = None
    error: str | None = None
    current: int
    total: int


class TaskSyncEvent(Event):
    type: Literal["task_sync"] = "task_sync"
    entity_value: str
    action: str
    task_id: str | None = None
    task_list_id: str | None = None
    error: str | None = None
    current: int
    total: int


class FeedbackEvent(Event):
    type: Literal["feedback"] = "feedback"
    feedback_id: str
    feedback_type: str
    value: str
    feedback: str
    entity_type: str | None = None
    relationship_type: str | None = None
