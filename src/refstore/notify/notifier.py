"""Change notification coordinator.

Observers register for data-mutation events (``add``, ``modify``, ``delete``,
...) on subject types (``item``, ``collection``, ...). Between ``begin()`` and
``commit()`` events are merged per (type, event) instead of being dispatched,
then flushed in a fixed priority order so observers see collections before
the items placed in them and additions before modifications and deletions.
Nested ``begin()`` calls are counted; only the outermost ``commit()`` flushes.

A queue opened with ``begin(lock=True)`` stays open across plain ``commit()``
calls until ``commit(unlock=True)``, which lets a multi-step operation span
several store transactions without leaking partial state.

One ``Notifier`` instance is shared by the record store, the importers and
the observers; it is passed around explicitly.
"""

from __future__ import annotations

import logging
import secrets
import string
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from refstore.errors import InvalidEventTypeError, NoActiveQueueError

LOGGER = logging.getLogger(__name__)

EVENT_TYPES = (
    "collection",
    "creator",
    "search",
    "share",
    "share-items",
    "item",
    "file",
    "collection-item",
    "item-tag",
    "tag",
    "setting",
    "group",
    "trash",
    "bucket",
    "relation",
)

# Dispatch priority on commit; anything unlisted goes after, in whitelist order
TYPE_ORDER = ("collection", "search", "item", "collection-item", "item-tag", "tag")
EVENT_ORDER = ("add", "modify", "remove", "move", "delete", "trash", "refresh", "redraw")

SubjectId = Union[int, str]
Observer = Callable[[str, str, List[SubjectId], Dict[SubjectId, Any]], None]
RecordExists = Callable[[str, SubjectId], bool]

_HANDLE_ALPHABET = string.ascii_letters + string.digits


class NotifierState(str, Enum):
    IDLE = "idle"
    QUEUING = "queuing"
    LOCKED = "locked"


@dataclass(slots=True)
class _Registration:
    observer: Observer
    types: Optional[Tuple[str, ...]]


@dataclass(slots=True)
class _Batch:
    ids: List[SubjectId] = field(default_factory=list)
    data: Dict[SubjectId, Any] = field(default_factory=dict)


def flatten_ids(ids: Any) -> List[SubjectId]:
    """Flatten a single id or arbitrarily nested iterables of ids."""
    if ids is None:
        return []
    if isinstance(ids, (int, str)):
        return [ids]
    flat: List[SubjectId] = []
    for value in ids:
        flat.extend(flatten_ids(value))
    return flat


def _rank(value: str, order: Tuple[str, ...], fallback: Tuple[str, ...]) -> Tuple[int, int]:
    if value in order:
        return (0, order.index(value))
    if value in fallback:
        return (1, fallback.index(value))
    return (2, 0)


def _validate_type(event_type: str) -> None:
    if event_type not in EVENT_TYPES:
        raise InvalidEventTypeError(f"Invalid event type '{event_type}'")


class Notifier:
    """Process-wide event bus with nestable, lockable queuing."""

    def __init__(self, record_exists: Optional[RecordExists] = None) -> None:
        # Used on commit to drop 'modify' events for records deleted meanwhile
        self.record_exists = record_exists
        self._observers: Dict[str, _Registration] = {}
        self._disabled = False
        self._in_transaction = False
        self._depth = 0
        self._locked = False
        self._queue: Dict[Tuple[str, str], _Batch] = {}

    @property
    def state(self) -> NotifierState:
        if not self._in_transaction:
            return NotifierState.IDLE
        return NotifierState.LOCKED if self._locked else NotifierState.QUEUING

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def register_observer(self, observer: Observer, types: Optional[Iterable[str]] = None) -> str:
        """Register ``observer`` and return its handle.

        ``types`` restricts delivery to the listed subject types; ``None``
        means every type.
        """
        type_filter: Optional[Tuple[str, ...]] = None
        if types is not None:
            type_filter = tuple(flatten_ids(types))  # type: ignore[arg-type]
            for event_type in type_filter:
                _validate_type(event_type)

        length = 2
        tries = 10
        while True:
            # Grow the handle when short ones keep colliding
            if not tries:
                length += 1
                tries = 10
            handle = "".join(secrets.choice(_HANDLE_ALPHABET) for _ in range(length))
            tries -= 1
            if handle not in self._observers:
                break

        LOGGER.debug(
            "Registering observer for %s with handle '%s'",
            "[" + ",".join(type_filter) + "]" if type_filter else "all types",
            handle,
        )
        self._observers[handle] = _Registration(observer, type_filter)
        return handle

    def unregister_observer(self, handle: str) -> None:
        LOGGER.debug("Unregistering observer with handle '%s'", handle)
        self._observers.pop(handle, None)

    def trigger(
        self,
        event: str,
        event_type: str,
        ids: Any,
        extra_data: Optional[Dict[SubjectId, Any]] = None,
        force: bool = False,
    ) -> bool:
        """Notify observers, or merge into the open queue.

        Returns False when notifications are disabled.
        """
        if self._disabled:
            LOGGER.debug("Notifications are disabled")
            return False

        _validate_type(event_type)
        id_list = flatten_ids(ids)

        queue = self._in_transaction and not force
        LOGGER.debug(
            "Notifier.trigger('%s', '%s', %s) %s",
            event,
            event_type,
            id_list,
            "queued" if queue else f"called [observers: {len(self._observers)}]",
        )

        if queue:
            batch = self._queue.setdefault((event_type, event), _Batch())
            batch.ids.extend(id_list)
            if extra_data:
                for subject_id, value in extra_data.items():
                    if value:
                        batch.data[subject_id] = value
            return True

        for handle, registration in list(self._observers.items()):
            if handle not in self._observers:
                LOGGER.debug("Observer '%s' no longer exists", handle)
                continue
            if registration.types is not None and event_type not in registration.types:
                continue
            # One failing observer must not block the others
            try:
                registration.observer(event, event_type, list(id_list), dict(extra_data or {}))
            except Exception:
                LOGGER.exception(
                    "Observer '%s' failed handling %s-%s", handle, event, event_type
                )
        return True

    def untrigger(self, event: str, event_type: str, ids: Any) -> None:
        """Remove ids from a pending, not yet dispatched batch."""
        if not self._in_transaction:
            raise NoActiveQueueError("untrigger() called with no active event queue")

        batch = self._queue.get((event_type, event))
        for subject_id in flatten_ids(ids):
            if batch is None or subject_id not in batch.ids:
                LOGGER.debug(
                    "%s-%s id %s not found in queue in untrigger()", event, event_type, subject_id
                )
                continue
            batch.ids = [queued for queued in batch.ids if queued != subject_id]
            batch.data.pop(subject_id, None)

    def begin(self, lock: bool = False) -> bool:
        """Start queuing events.

        Returns True when this call acquired the lock, in which case the caller
        owns the matching ``commit(unlock=True)``.
        """
        acquired = False
        if lock and not self._locked:
            self._locked = True
            acquired = True

        if not self._in_transaction:
            LOGGER.debug("Beginning notifier event queue")
            self._in_transaction = True
        self._depth += 1

        return acquired

    def commit(self, unlock: Optional[bool] = None) -> None:
        """Close one ``begin()`` level and flush once the outermost one closes.

        While the queue is locked nothing is flushed unless ``unlock`` is True,
        which flushes regardless of nesting. ``unlock=False`` keeps the queue
        open untouched.
        """
        if unlock is not None and not unlock:
            return
        if not unlock:
            self._depth = max(self._depth - 1, 0)
            if self._locked or self._depth > 0:
                return

        run_queue: List[Tuple[str, str, _Batch]] = []
        for (event_type, event), batch in self._queue.items():
            flushed = _Batch()
            for subject_id in batch.ids:
                if (
                    event == "modify"
                    and self.record_exists is not None
                    and not self.record_exists(event_type, subject_id)
                ):
                    continue
                if subject_id in flushed.ids:
                    continue
                flushed.ids.append(subject_id)
                if subject_id in batch.data:
                    flushed.data[subject_id] = batch.data[subject_id]
            if flushed.ids or event == "refresh":
                run_queue.append((event_type, event, flushed))

        self.reset()

        if not run_queue:
            return

        run_queue.sort(
            key=lambda entry: (
                _rank(entry[0], TYPE_ORDER, EVENT_TYPES),
                _rank(entry[1], EVENT_ORDER, ()),
            )
        )
        LOGGER.debug(
            "Committing notifier event queue %s",
            " ".join(f"[{event}-{event_type}: {len(batch.ids)}]" for event_type, event, batch in run_queue),
        )
        for event_type, event, batch in run_queue:
            self.trigger(event, event_type, batch.ids, batch.data, force=True)

    def snapshot(self) -> Dict[Tuple[str, str], _Batch]:
        """Copy of the pending queue, restored when a partial rollback drops its events."""
        return {key: _Batch(list(batch.ids), dict(batch.data)) for key, batch in self._queue.items()}

    def restore(self, snapshot: Dict[Tuple[str, str], _Batch]) -> None:
        if self._in_transaction:
            self._queue = snapshot

    def rollback(
        self, snapshot: Optional[Dict[Tuple[str, str], _Batch]] = None, acquired: bool = False
    ) -> None:
        """Abandon one ``begin()`` level without flushing.

        With no snapshot the level opened the queue itself and everything is
        dropped. Otherwise the enclosing span keeps its queue as it was at
        ``snapshot()`` time, and its lock unless this level ``acquired`` it.
        """
        if snapshot is None:
            self.reset()
            return
        self.restore(snapshot)
        self._depth = max(self._depth - 1, 0)
        if acquired:
            self._locked = False

    def reset(self) -> None:
        """Drop all queued events and unlock."""
        LOGGER.debug("Resetting notifier event queue")
        self._locked = False
        self._queue = {}
        self._in_transaction = False
        self._depth = 0

    def disable(self) -> bool:
        """Suppress all notifications. Returns False if already disabled."""
        if self._disabled:
            LOGGER.debug("Notifications are already disabled")
            return False
        LOGGER.debug("Disabling notifications")
        self._disabled = True
        return True

    def enable(self) -> None:
        LOGGER.debug("Enabling notifications")
        self._disabled = False

    def is_enabled(self) -> bool:
        return not self._disabled

    @contextmanager
    def queued(self, lock: bool = False) -> Iterator["Notifier"]:
        """Queue events for the duration of the block.

        The queue is flushed on normal exit. If the block raises, its events are
        dropped and an enclosing span is left as it was on entry.
        """
        pending = self.snapshot() if self._in_transaction else None
        acquired = self.begin(lock)
        try:
            yield self
        except BaseException:
            self.rollback(pending, acquired)
            raise
        self.commit(unlock=True if acquired else None)
