from __future__ import annotations

import itertools
import threading
from concurrent.futures import Future
from dataclasses import dataclass

from .types import PredictOutput


@dataclass(frozen=True)
class Ticket:
    session: str | None
    seq: int


class RequestSlots:
    """One in-flight prediction slot per client session; the newest request wins.

    Starting a request in a session supersedes the previous one. A superseded
    prediction that is still queued is cancelled; one already running finishes
    but its result is discarded by the caller. Requests without a session are
    never superseded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._latest: dict[str, int] = {}
        self._pending: dict[str, Future[PredictOutput]] = {}

    def begin(self, session: str | None) -> Ticket:
        with self._lock:
            seq = next(self._counter)
            if session is None:
                return Ticket(None, seq)
            prev = self._pending.pop(session, None)
            self._latest[session] = seq
        if prev is not None:
            prev.cancel()
        return Ticket(session, seq)

    def attach(self, ticket: Ticket, fut: Future[PredictOutput]) -> None:
        if ticket.session is None:
            return
        with self._lock:
            current = self._latest.get(ticket.session) == ticket.seq
            if current:
                self._pending[ticket.session] = fut
        if not current:
            fut.cancel()

    def is_current(self, ticket: Ticket) -> bool:
        if ticket.session is None:
            return True
        with self._lock:
            return self._latest.get(ticket.session) == ticket.seq

    def finish(self, ticket: Ticket) -> None:
        if ticket.session is None:
            return
        with self._lock:
            if self._latest.get(ticket.session) == ticket.seq:
                del self._latest[ticket.session]
                self._pending.pop(ticket.session, None)

    def active_sessions(self) -> int:
        with self._lock:
            return len(self._latest)
