"""
Workflow repository: the persistent store behind every state machine.

Realized as an in-memory async store so the core can run without a database.
Every method is a coroutine, matching how the workflow services would talk to
a real backing store.

Key design decisions:
- Records are deep-copied on the way in and out. Callers cannot mutate
  persisted state except through save().
- save() is optimistic: the caller's `revision` must equal the stored one,
  otherwise StaleState. A successful save bumps the revision.
- Unique constraints are checked on insert and save and raise DuplicateRecord:
  one DRAFT OMVersion per deal, one BuyerResponse per recipient, one
  BuyerAuthorization per recipient.
- The deal audit log and the OM change log are append-only and stored
  separately from the snapshots they describe.
- lock(*key) hands out one asyncio.Lock per key for check-then-act sections.
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Hashable, TypeVar

import structlog
from pydantic import BaseModel

from .errors import DuplicateRecord, NotFound, StaleState
from .models.deal import DealEvent
from .models.distribution import BuyerAuthorization, BuyerProfile, BuyerResponse
from .models.escalation import WorkItem
from .models.om import OMChangeLogEntry, OMStatus, OMVersion
from .utils import utc_now

logger = structlog.get_logger(__name__)

RecordT = TypeVar('RecordT', bound=BaseModel)

# Primary key attribute per model; everything else uses `id`.
_KEY_FIELDS: dict[type[BaseModel], str] = {
    BuyerProfile: 'buyer_id',
    WorkItem: 'item_id',
}


def _draft_per_deal(record: OMVersion) -> Hashable | None:
    return record.deal_id if record.status == OMStatus.DRAFT else None


# Unique constraint extractors: a None key does not participate.
_UNIQUE_CONSTRAINTS: dict[type[BaseModel], list[tuple[str, Callable[[Any], Hashable | None]]]] = {
    OMVersion: [('one_draft_per_deal', _draft_per_deal)],
    BuyerResponse: [('one_response_per_recipient', lambda r: r.recipient_id)],
    BuyerAuthorization: [('one_authorization_per_recipient', lambda r: r.recipient_id)],
}


def _key_of(record: BaseModel) -> str:
    return getattr(record, _KEY_FIELDS.get(type(record), 'id'))


class WorkflowRepository:
    """In-memory async store with optimistic versioning and unique constraints."""

    def __init__(self):
        self._tables: dict[type[BaseModel], dict[str, BaseModel]] = defaultdict(dict)
        self._events: dict[str, list[DealEvent]] = defaultdict(list)
        self._change_log: dict[str, list[OMChangeLogEntry]] = defaultdict(list)
        self._locks: dict[tuple[Hashable, ...], asyncio.Lock] = {}

    # =========================================================================
    # Locks
    # =========================================================================

    def lock(self, *key: Hashable) -> asyncio.Lock:
        """Return the lock for `key`, creating it on first use."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_locked(self, *key: Hashable) -> bool:
        existing = self._locks.get(key)
        return existing is not None and existing.locked()

    # =========================================================================
    # Snapshots
    # =========================================================================

    def _check_unique(self, record: BaseModel) -> None:
        table = self._tables[type(record)]
        record_key = _key_of(record)
        for name, extract in _UNIQUE_CONSTRAINTS.get(type(record), []):
            value = extract(record)
            if value is None:
                continue
            for other_key, other in table.items():
                if other_key != record_key and extract(other) == value:
                    raise DuplicateRecord(
                        f"Unique constraint {name} violated",
                        context={'model': type(record).__name__, 'key': value},
                    )

    async def insert(self, record: RecordT) -> RecordT:
        """Store a new record. Raises DuplicateRecord on key or unique violation."""
        table = self._tables[type(record)]
        key = _key_of(record)
        if key in table:
            raise DuplicateRecord(
                f"{type(record).__name__} {key} already exists",
                context={'model': type(record).__name__, 'key': key},
            )
        self._check_unique(record)
        stored = record.model_copy(deep=True)
        if hasattr(stored, 'revision'):
            stored.revision = 1
        table[key] = stored
        return stored.model_copy(deep=True)

    async def save(self, record: RecordT) -> RecordT:
        """
        Persist changes to an existing record.

        The record's `revision` must match the stored revision (the one the
        caller read); otherwise a concurrent writer got there first.

        Raises:
            NotFound: The record was never inserted
            StaleState: The stored revision moved on since the caller read it
            DuplicateRecord: The change violates a unique constraint
        """
        table = self._tables[type(record)]
        key = _key_of(record)
        current = table.get(key)
        if current is None:
            raise NotFound(
                f"{type(record).__name__} {key} not found",
                context={'model': type(record).__name__, 'key': key},
            )
        if hasattr(record, 'revision') and current.revision != record.revision:
            logger.warning(
                'repository.stale_write',
                model=type(record).__name__,
                key=key,
                expected_revision=record.revision,
                stored_revision=current.revision,
            )
            raise StaleState(
                f"{type(record).__name__} {key} was modified concurrently",
                context={
                    'model': type(record).__name__,
                    'key': key,
                    'expected_revision': record.revision,
                    'stored_revision': current.revision,
                },
            )
        self._check_unique(record)
        stored = record.model_copy(deep=True)
        if hasattr(stored, 'revision'):
            stored.revision = current.revision + 1
        if hasattr(stored, 'updated_at'):
            stored.updated_at = utc_now()
        table[key] = stored
        return stored.model_copy(deep=True)

    async def get(self, model: type[RecordT], key: str) -> RecordT | None:
        stored = self._tables[model].get(key)
        return stored.model_copy(deep=True) if stored is not None else None

    async def require(self, model: type[RecordT], key: str) -> RecordT:
        """Like get(), but raises NotFound when the record is missing."""
        record = await self.get(model, key)
        if record is None:
            raise NotFound(
                f"{model.__name__} {key} not found",
                context={'model': model.__name__, 'key': key},
            )
        return record

    async def find(
        self,
        model: type[RecordT],
        predicate: Callable[[RecordT], bool] | None = None,
        **filters: Any,
    ) -> list[RecordT]:
        """Return copies of every record matching all attribute filters and the predicate."""
        results = []
        for stored in self._tables[model].values():
            if any(getattr(stored, name) != value for name, value in filters.items()):
                continue
            if predicate is not None and not predicate(stored):
                continue
            results.append(stored.model_copy(deep=True))
        return results

    # =========================================================================
    # Append-only logs
    # =========================================================================

    async def append_event(self, event: DealEvent) -> DealEvent:
        self._events[event.deal_id].append(event.model_copy(deep=True))
        return event

    async def list_events(self, deal_id: str) -> list[DealEvent]:
        return [e.model_copy(deep=True) for e in self._events[deal_id]]

    async def append_change_log(self, entry: OMChangeLogEntry) -> OMChangeLogEntry:
        self._change_log[entry.version_id].append(entry.model_copy(deep=True))
        return entry

    async def list_change_log(self, version_id: str) -> list[OMChangeLogEntry]:
        return [e.model_copy(deep=True) for e in self._change_log[version_id]]
