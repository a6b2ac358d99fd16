"""Time-based transitions driven by whoever is looking at a request.

There is no durable scheduler. ``tick`` compares stored timestamps with the
current time and issues the same lifecycle actions a client could send:

* ``direct_sent`` past ``direct_expires_at`` -> ``open_marketplace``
* ``published`` untouched for the match delay -> ``ensure_matches``

``tick`` runs on every workspace read. A request nobody reads only advances
when the optional background sweep is enabled
(``WATCHDOG_BACKGROUND_INTERVAL_SECONDS``).
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from repairmatch.env import env_float, env_int
from repairmatch.models import ClientRequest
from repairmatch.services.lifecycle import DIRECT_EXPIRED_LABEL, RequestLifecycleController, lifecycle_controller
from repairmatch.services.request_store import RequestStoreError, parse_timestamp

logger = logging.getLogger(__name__)

MATCH_GENERATION_DELAY_SECONDS = env_int("MATCH_GENERATION_DELAY_SECONDS", 20)
WATCHDOG_DEBOUNCE_SECONDS = env_float("WATCHDOG_DEBOUNCE_SECONDS", 1.2)
WATCHDOG_BACKGROUND_INTERVAL_SECONDS = env_float("WATCHDOG_BACKGROUND_INTERVAL_SECONDS", 0.0)

OBSERVED_STATUSES = ("direct_sent", "published")


@dataclass(frozen=True)
class DueAction:
    request_id: str
    client_id: str
    action: str


def due_actions(
    requests: Iterable[ClientRequest],
    now: datetime,
    match_delay: timedelta,
) -> List[DueAction]:
    result: List[DueAction] = []
    for request in requests:
        if request.status == "direct_sent":
            expires_at = parse_timestamp(request.direct_expires_at)
            if expires_at is not None and now >= expires_at:
                result.append(DueAction(request.id, request.client_id, "open_marketplace"))
        elif request.status == "published":
            updated_at = parse_timestamp(request.updated_at)
            if updated_at is not None and now - updated_at >= match_delay:
                result.append(DueAction(request.id, request.client_id, "ensure_matches"))
    return result


class TimeoutWatchdog:
    def __init__(
        self,
        controller: RequestLifecycleController,
        match_delay_seconds: float = MATCH_GENERATION_DELAY_SECONDS,
        debounce_seconds: float = WATCHDOG_DEBOUNCE_SECONDS,
    ):
        self.controller = controller
        self.match_delay = timedelta(seconds=match_delay_seconds)
        self.debounce = timedelta(seconds=debounce_seconds)
        self._lock = Lock()
        self._recent: Dict[Tuple[str, str], datetime] = {}

    def _claim(self, due: DueAction, now: datetime) -> bool:
        key = (due.request_id, due.action)
        with self._lock:
            self._recent = {k: at for k, at in self._recent.items() if now - at < self.debounce}
            if key in self._recent:
                return False
            self._recent[key] = now
            return True

    def _observed_requests(self, client_id: Optional[str]) -> List[ClientRequest]:
        store = self.controller.store
        with store.transaction() as conn:
            rows = store.list_request_rows(conn, client_id=client_id, statuses=OBSERVED_STATUSES)
            return [store.request_from_row(row) for row in rows]

    def tick(self, client_id: Optional[str] = None, now: Optional[datetime] = None) -> List[DueAction]:
        """Issue every due transition for ``client_id`` (or everyone when None)."""
        current = now or self.controller.store.now()
        issued: List[DueAction] = []
        try:
            observed = self._observed_requests(client_id)
        except sqlite3.Error as exc:
            logger.warning("watchdog read skipped: %s", exc)
            return issued
        for due in due_actions(observed, current, self.match_delay):
            if not self._claim(due, current):
                continue
            try:
                if due.action == "open_marketplace":
                    self.controller.open_marketplace(due.request_id, due.client_id, label=DIRECT_EXPIRED_LABEL)
                else:
                    self.controller.ensure_matches(due.request_id, due.client_id)
            except RequestStoreError as exc:
                # Another writer usually got there first; the next tick re-reads.
                logger.warning("watchdog %s on %s skipped: %s", due.action, due.request_id, exc)
                continue
            except sqlite3.Error as exc:
                logger.warning("watchdog %s on %s failed: %s", due.action, due.request_id, exc)
                continue
            logger.info("watchdog issued %s on %s", due.action, due.request_id)
            issued.append(due)
        return issued


async def run_background_sweep(watchdog: "TimeoutWatchdog", interval_seconds: float) -> None:
    while True:
        try:
            await asyncio.to_thread(watchdog.tick)
        except Exception:
            logger.exception("Background watchdog sweep failed")
        await asyncio.sleep(interval_seconds)


timeout_watchdog = TimeoutWatchdog(controller=lifecycle_controller)
