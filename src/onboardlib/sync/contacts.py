"""Sync discovered people into an external contacts store.

A person's display value is split into given and family names. When an
email address can be associated with the person, an existing contact with
that address is updated; otherwise a new contact is created.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from onboardlib.models import DiscoveredEntity
from onboardlib.sync.base import ProgressCallback, SyncAction, SyncAdapter, SyncResult, SyncSummary

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"[\w.-]+@[\w.-]+\.\w+")


@dataclass(frozen=True)
class ContactDraft:
    given_name: str
    family_name: str | None = None
    email: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ExternalContact:
    resource_name: str
    email: str | None = None


class ContactsClient(ABC):
    """Native API of the external contacts store."""

    @abstractmethod
    async def find_by_email(self, email: str) -> ExternalContact | None:
        ...

    @abstractmethod
    async def create_contact(self, draft: ContactDraft) -> ExternalContact:
        ...

    @abstractmethod
    async def update_contact(self, resource_name: str, draft: ContactDraft) -> ExternalContact:
        ...


def parse_person_name(value: str) -> tuple[str, str | None]:
    """Split a display name into (given, family).

    ``"Doe, Jane"`` gives ``("Jane", "Doe")``; ``"Jane van Doe"`` gives
    ``("Jane", "van Doe")``; a single token is a given name only.
    """
    text = value.strip()
    if "," in text:
        last, _, first = text.partition(",")
        last, first = last.strip(), first.strip()
        if first and last:
            return first, last
        return (first or last), None
    parts = text.split()
    if len(parts) <= 1:
        return text, None
    return parts[0], " ".join(parts[1:])


def find_email(text: str | None) -> str | None:
    """First email address appearing in *text*, if any."""
    if not text:
        return None
    match = _EMAIL_PATTERN.search(text)
    return match.group(0) if match else None


class ContactsSyncAdapter(SyncAdapter):
    """Creates or updates contacts for ``person`` entities."""

    entity_type = "person"

    def __init__(self, client: ContactsClient, call_delay: float = 0.1) -> None:
        super().__init__(call_delay)
        self._client = client

    async def _sync(
        self,
        entity: DiscoveredEntity,
        email: str | None = None,
        email_map: dict[str, str] | None = None,
        **_: object,
    ) -> SyncResult:
        given, family = parse_person_name(entity.value)
        if not given:
            return SyncResult(SyncAction.SKIPPED, error="Empty person name")

        if email is None and email_map:
            email = email_map.get(entity.value) or email_map.get(entity.normalized_key)
        if email is None:
            email = find_email(entity.context)

        draft = ContactDraft(
            given_name=given,
            family_name=family,
            email=email,
            notes=f"Discovered via email analysis. Seen {entity.occurrence_count} times.",
        )

        if email:
            await self._throttle()
            existing = await self._client.find_by_email(email)
            if existing is not None:
                await self._throttle()
                updated = await self._client.update_contact(existing.resource_name, draft)
                logger.debug("Updated contact %s for %r", updated.resource_name, entity.value)
                return SyncResult(SyncAction.UPDATED, external_id=updated.resource_name)

        await self._throttle()
        created = await self._client.create_contact(draft)
        logger.debug("Created contact %s for %r", created.resource_name, entity.value)
        return SyncResult(SyncAction.CREATED, external_id=created.resource_name)

    async def sync_entities(
        self,
        entities: Iterable[DiscoveredEntity],
        email_map: dict[str, str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncSummary:
        """Sync every person in *entities*; non-person entities are ignored."""
        return await self._sync_all(entities, on_progress, email_map=email_map)
