# remote/cache.py
"""
Session cache: at most one live SSH session per identity, shared by every
caller, disposed after it has been idle for `ttl` seconds.

    cache = SessionCache(open_ssh_session, ttl=600)
    with cache:
        session = cache.acquire(identity)
        ...

Idle disposal runs on a timer thread. Each (re)scheduling bumps the key's
generation; a timer only disposes the session if its generation is still
current, so a timer racing a fresh `acquire` is a no-op.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterator, Optional

from ..errors import AuthError

logger = logging.getLogger(__name__)

DEFAULT_TTL = 600.0

TimerFactory = Callable[[float, Callable[[], None]], Any]


def _thread_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay, fn)
    t.daemon = True
    return t


@dataclass
class _Entry:
    session: Any
    generation: int = 0
    timer: Any = None


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class SessionCache:
    def __init__(
        self,
        opener: Callable[[Any], Any],
        *,
        ttl: float = DEFAULT_TTL,
        timer_factory: TimerFactory = _thread_timer,
    ):
        self._opener = opener
        self.ttl = ttl
        self._timer_factory = timer_factory
        self._entries: Dict[Hashable, _Entry] = {}
        self._locks: Dict[Hashable, _KeyLock] = {}
        self._guard = threading.Lock()

    def __enter__(self) -> "SessionCache":
        return self

    def __exit__(self, *exc) -> None:
        self.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    @contextmanager
    def _locked(self, key: Hashable) -> Iterator[None]:
        # Per-key lock, dropped from the table once nobody holds or waits for it.
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = self._locks[key] = _KeyLock()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._locks[key]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def acquire(self, key: Hashable) -> Any:
        """
        Return the live session for `key`, opening one if needed, and restart
        its idle timer.

        Raises:
            AuthError: the session could not be opened (nothing is cached)
        """
        with self._locked(key):
            entry = self._entries.get(key)
            if entry is not None and not _is_alive(entry.session):
                logger.info("Cached session for %s is dead, reopening", key)
                self._dispose_locked(key)
                entry = None

            if entry is None:
                try:
                    session = self._opener(key)
                except AuthError:
                    raise
                except Exception as e:
                    raise AuthError(f"Could not open session for {key}", {"cause": str(e)}) from e
                entry = self._entries[key] = _Entry(session=session)

            self._schedule_locked(key, entry, self.ttl)
            return entry.session

    def release_or_expire(self, key: Hashable, ttl: Optional[float] = None) -> None:
        """(Re)schedule disposal of `key` after `ttl` seconds. Unknown keys are ignored."""
        with self._locked(key):
            entry = self._entries.get(key)
            if entry is None:
                return
            self._schedule_locked(key, entry, self.ttl if ttl is None else ttl)

    def evict(self, key: Hashable, session: Any = None) -> None:
        """
        Close and forget the session for `key`. Idempotent.

        With `session`, only evict if that is still the cached session; a
        session another caller reopened in the meantime is left alone.
        """
        with self._locked(key):
            entry = self._entries.get(key)
            if entry is None or (session is not None and entry.session is not session):
                return
            self._dispose_locked(key)

    def clear(self) -> None:
        for key in list(self._entries):
            self.evict(key)

    # ------------------------------------------------------------------
    # Internals (caller holds the key lock)
    # ------------------------------------------------------------------

    def _schedule_locked(self, key: Hashable, entry: _Entry, ttl: float) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        entry.generation += 1
        generation = entry.generation
        entry.timer = self._timer_factory(ttl, lambda: self._expire(key, generation))
        entry.timer.start()

    def _expire(self, key: Hashable, generation: int) -> None:
        with self._locked(key):
            entry = self._entries.get(key)
            if entry is None or entry.generation != generation:
                return
            logger.debug("Session for %s idle for %ss, closing", key, self.ttl)
            self._dispose_locked(key, cancel_timer=False)

    def _dispose_locked(self, key: Hashable, *, cancel_timer: bool = True) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        if cancel_timer and entry.timer is not None:
            entry.timer.cancel()
        try:
            entry.session.close()
        except Exception as e:
            logger.warning("Error while closing session for %s: %s", key, e)


def _is_alive(session: Any) -> bool:
    check = getattr(session, "is_active", None)
    if check is None:
        return True
    try:
        return bool(check())
    except Exception:
        return False
