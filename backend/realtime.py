"""
Live pickup lists.

A ``LiveList`` subscribes to the pickups change feed with a row filter and
re-fetches its whole list on every matching insert, update or delete.
Snapshots are queued for a consumer (the SSE stream) and optionally handed to
a callback. Once stopped, a view ignores any refresh still in flight.
"""
import json
import logging
import queue
from typing import Any, Callable, Dict, Iterator, List, Optional

from . import pickups
from .db import Store
from .models import ChangeEvent, PickupRequest, PickupStatus

logger = logging.getLogger(__name__)

Snapshot = List[PickupRequest]


class LiveList:
    def __init__(self, store: Store, fetch: Callable[[], Snapshot], filters: Optional[Dict[str, Any]] = None,
                 on_update: Optional[Callable[[Snapshot], None]] = None, table: str = 'pickups'):
        self._fetch = fetch
        self._on_update = on_update
        self._updates: 'queue.Queue[Snapshot]' = queue.Queue()
        self._subscription = store.subscribe(table, self._on_change, filters=filters)
        self._alive = False
        self.snapshot: Snapshot = []

    @property
    def alive(self) -> bool:
        return self._alive

    def start(self) -> 'LiveList':
        # Subscribe before the first fetch so nothing committed in between is missed
        self._alive = True
        self._subscription.start()
        self.refresh()
        return self

    def stop(self) -> None:
        self._alive = False
        self._subscription.stop()

    def refresh(self) -> None:
        items = self._fetch()
        if not self._alive:
            return
        self.snapshot = items
        self._updates.put(items)
        if self._on_update is not None:
            self._on_update(items)

    def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("live list refresh on %s %s", event.kind.value, event.row.get('id'))
        self.refresh()

    def next_update(self, timeout: Optional[float] = None) -> Optional[Snapshot]:
        try:
            return self._updates.get(timeout=timeout)
        except queue.Empty:
            return None


def user_pickups_view(store: Store, user_id: str, on_update=None) -> LiveList:
    """Every pickup the user requested."""
    return LiveList(
        store,
        lambda: pickups.list_requests_for_user(store, user_id),
        filters={'user_id': user_id},
        on_update=on_update,
    )


def area_requests_view(store: Store, pincode: str, on_update=None) -> LiveList:
    """Open, unassigned requests in a collector's area, oldest first."""
    return LiveList(
        store,
        lambda: pickups.list_requests_for_collector(store, pincode, PickupStatus.REQUESTED),
        filters={'pincode': pincode, 'scrapper_id': None},
        on_update=on_update,
    )


def assigned_pickups_view(store: Store, collector_id: str, on_update=None) -> LiveList:
    """Pickups a collector has claimed and not yet finished."""
    return LiveList(
        store,
        lambda: pickups.list_assigned(store, collector_id),
        filters={'scrapper_id': collector_id},
        on_update=on_update,
    )


def sse_stream(live: LiveList, keepalive_seconds: float = 15) -> Iterator[str]:
    """Server-Sent Events for a started view; the view is stopped when the client goes away."""
    try:
        # Send an initial comment to establish the stream
        yield ': connected\n\n'
        while live.alive:
            items = live.next_update(timeout=keepalive_seconds)
            if items is None:
                yield ': keep-alive\n\n'
                continue
            data = json.dumps({"pickups": [p.to_dict() for p in items]})
            yield f'data: {data}\n\n'
    except GeneratorExit:
        pass
    finally:
        live.stop()
