"""Client-side optimistic like/unlike with debounce and watchdog.

Each target id moves through ``idle -> pending -> confirmed | reverted``.
What the UI shows is ``actual XOR optimistic``: ``actual`` holds ids the
server has confirmed as liked, ``optimistic`` holds ids whose state has been
flipped locally but not yet confirmed.

A toggle flips the optimistic state at once and (re)arms two timers:

* the debounce timer, which sends one request carrying the final intended
  action, so rapid clicks collapse into a single network call;
* the watchdog, which reverts the flip if no answer arrives in time.

While a request for an id is in flight, further toggles of that id are
ignored. Timers come from an injectable scheduler so the state machine can
be driven without real time in tests.
"""
import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import requests

import config
from likes import is_uuid

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = {
    'nft': config.NFT_LIKE_DEBOUNCE_SECONDS,
    'collection': config.COLLECTION_LIKE_DEBOUNCE_SECONDS,
}

LABELS = {'nft': 'NFT', 'collection': 'Collection'}


class Session:
    """Signed-in user as seen by the client."""

    def __init__(self, user_id: str, access_token: str):
        self.user_id = user_id
        self.access_token = access_token

    @property
    def auth_headers(self) -> dict:
        return {'Authorization': f'Bearer {self.access_token}'}


class ThreadingScheduler:
    def call_later(self, delay: float, callback):
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class LikeApiClient:
    """HTTP transport for the like endpoints.

    ``send`` returns immediately with a Future so calls for different ids
    never block each other.
    """

    def __init__(self, base_url: str, session: Session, timeout: float = 10.0,
                 executor: ThreadPoolExecutor = None, http: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.session = session
        self.timeout = timeout
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix='likes')
        self.http = http or requests.Session()

    def send(self, kind: str, target_id: str, action: str):
        return self.executor.submit(self._post, kind, target_id, action)

    def _post(self, kind: str, target_id: str, action: str) -> dict:
        r = self.http.post(f"{self.base_url}/api/likes/{kind}",
                           json={'target_id': target_id, 'action': action},
                           headers=self.session.auth_headers, timeout=self.timeout)
        try:
            body = r.json()
        except ValueError:
            body = {}
        if 'success' not in body:
            body = {'success': False, 'code': f'HTTP_{r.status_code}',
                    'message': body.get('error') or f'Request failed with status {r.status_code}'}
        return body

    def fetch_liked(self, kind: str) -> list:
        r = self.http.get(f"{self.base_url}/api/likes/{kind}",
                          headers=self.session.auth_headers, timeout=self.timeout)
        r.raise_for_status()
        return list(r.json().get('liked') or [])

    def close(self):
        self.executor.shutdown(wait=False)
        self.http.close()


def _log_toast(level: str, message: str):
    logger.info("[toast:%s] %s", level, message)


class _Pending:
    def __init__(self, generation: int):
        self.generation = generation
        self.action = None
        self.delta = 0
        self.in_flight = False
        self.debounce = None
        self.watchdog = None

    def cancel_timers(self):
        for handle in (self.debounce, self.watchdog):
            if handle is not None:
                handle.cancel()
        self.debounce = None
        self.watchdog = None


class LikeReconciler:
    def __init__(self, kind: str, transport, scheduler=None, notify=None, on_stats_update=None,
                 session: Session = None, debounce_seconds: float = None,
                 watchdog_seconds: float = config.LIKE_WATCHDOG_SECONDS):
        if kind not in DEBOUNCE_SECONDS:
            raise ValueError(f"Unknown like target kind: {kind}")
        self.kind = kind
        self.transport = transport
        self.scheduler = scheduler or ThreadingScheduler()
        self.notify = notify or _log_toast
        self.on_stats_update = on_stats_update
        self.session = session
        self.debounce_seconds = DEBOUNCE_SECONDS[kind] if debounce_seconds is None else debounce_seconds
        self.watchdog_seconds = watchdog_seconds

        self._actual = set()
        self._optimistic = set()
        self._pending = {}
        self._generations = itertools.count(1)
        self._lock = threading.RLock()

    # ---- reads ----

    def is_liked(self, target_id: str) -> bool:
        with self._lock:
            return (target_id in self._actual) != (target_id in self._optimistic)

    def is_pending(self, target_id: str) -> bool:
        with self._lock:
            return target_id in self._pending

    def liked_ids(self) -> list:
        with self._lock:
            return sorted(self._actual ^ self._optimistic)

    # ---- loading ----

    def load(self, liked_ids):
        with self._lock:
            self._actual = set(liked_ids or [])

    def refresh(self) -> bool:
        if not self.session:
            self.load([])
            return False
        try:
            ids = self.transport.fetch_liked(self.kind)
        except Exception as e:
            logger.error("Error loading liked %ss: %s", self.kind, e)
            return False
        self.load(ids)
        return True

    # ---- toggling ----

    def toggle(self, target_id: str) -> bool:
        """Flip the like state of ``target_id``; returns False if ignored."""
        if not self.session:
            self.notify('error', 'Please connect your wallet first')
            return False
        if self.kind == 'collection' and not is_uuid(target_id):
            logger.error("Invalid collection ID provided to toggle: %s", target_id)
            self.notify('error', 'Invalid collection ID')
            return False

        with self._lock:
            pending = self._pending.get(target_id)
            if pending is not None and pending.in_flight:
                logger.debug("Ignoring toggle for %s: request in flight", target_id)
                return False

            liked_now = (target_id in self._actual) != (target_id in self._optimistic)
            delta = -1 if liked_now else 1
            if pending is None:
                pending = _Pending(next(self._generations))
                self._pending[target_id] = pending

            self._optimistic.symmetric_difference_update({target_id})
            pending.action = 'unlike' if liked_now else 'like'
            pending.delta += delta

            pending.cancel_timers()
            generation = pending.generation
            pending.debounce = self.scheduler.call_later(
                self.debounce_seconds, lambda: self._send(target_id, generation))
            pending.watchdog = self.scheduler.call_later(
                self.watchdog_seconds, lambda: self._on_timeout(target_id, generation))

        self._emit_stats(target_id, delta)
        return True

    def _send(self, target_id: str, generation: int):
        with self._lock:
            pending = self._pending.get(target_id)
            if pending is None or pending.generation != generation or pending.in_flight:
                return
            pending.in_flight = True
            pending.debounce = None
            action = pending.action

        try:
            future = self.transport.send(self.kind, target_id, action)
        except Exception as e:
            logger.error("Error toggling %s like for %s: %s", self.kind, target_id, e)
            self._revert(target_id, generation, 'error', str(e) or 'Failed to update like status')
            return
        future.add_done_callback(lambda f: self._on_response(target_id, generation, action, f))

    def _on_response(self, target_id: str, generation: int, action: str, future):
        try:
            result = future.result() or {}
        except Exception as e:
            logger.error("Error toggling %s like for %s: %s", self.kind, target_id, e)
            self._revert(target_id, generation, 'error', str(e) or 'Failed to update like status')
            return

        if result.get('success') or (action == 'like' and result.get('code') == 'ALREADY_LIKED'):
            self._confirm(target_id, generation, action)
        else:
            self._revert(target_id, generation, 'error',
                         result.get('message') or result.get('error') or 'Failed to update like status')

    def _confirm(self, target_id: str, generation: int, action: str):
        with self._lock:
            pending = self._pending.get(target_id)
            if pending is None or pending.generation != generation:
                logger.warning("Discarding late %s response for %s", self.kind, target_id)
                return
            pending.cancel_timers()
            del self._pending[target_id]
            self._optimistic.discard(target_id)
            if action == 'like':
                self._actual.add(target_id)
            else:
                self._actual.discard(target_id)
        self.notify('success', f"{LABELS[self.kind]} {action}d!")

    def _on_timeout(self, target_id: str, generation: int):
        self._revert(target_id, generation, 'warning',
                     f"{LABELS[self.kind]} like is taking too long, change reverted")

    def _revert(self, target_id: str, generation: int, level: str, message: str):
        with self._lock:
            pending = self._pending.get(target_id)
            if pending is None or pending.generation != generation:
                return
            pending.cancel_timers()
            del self._pending[target_id]
            self._optimistic.discard(target_id)
            delta = pending.delta
        if delta:
            self._emit_stats(target_id, -delta)
        self.notify(level, message)

    def _emit_stats(self, target_id: str, delta: int):
        if self.on_stats_update is None:
            return
        try:
            self.on_stats_update(self.kind, target_id, delta)
        except Exception:
            logger.exception("stats update listener failed")

    def close(self):
        with self._lock:
            for pending in self._pending.values():
                pending.cancel_timers()
            self._pending.clear()
        close_transport = getattr(self.transport, 'close', None)
        if close_transport is not None:
            close_transport()
