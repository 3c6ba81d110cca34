"""Change feed: committed row changes fanned out to filtered subscriptions.

Rows are captured from SQLAlchemy session events. Inserts and updates are
collected after each flush, deletes before it (the row is gone afterwards).
Everything collected in a transaction is published when it commits and
dropped when it rolls back. Published changes go through one FIFO queue, so
every subscription sees them in commit order.
"""

import itertools
import logging
import queue
import re
import threading

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from quizlive.errors import ValidationError
from quizlive.models import COLLECTIONS, phase_rank
from quizlive.realtime.events import DELETE, EVENT_TYPES, INSERT, UPDATE, RowChange

_PENDING_KEY = 'quizlive.pending_changes'
_FILTER_RE = re.compile(r'^(?P<column>\w+)=(?P<op>eq|neq|in)\.(?P<value>.+)$')


class RowFilter:
    """Server side row predicate in ``column=op.value`` form.

    Supported: ``id=eq.5``, ``phase=neq.lobby``, ``game_id=in.(1,2)``.
    Values compare as strings.
    """

    def __init__(self, column, op, values):
        self.column = column
        self.op = op
        self.values = values

    @classmethod
    def parse(cls, expr, table):
        if expr is None or expr == '':
            return None
        match = _FILTER_RE.match(str(expr).strip())
        if not match:
            raise ValidationError(f"Malformed filter '{expr}'")
        column, op, raw = match.group('column'), match.group('op'), match.group('value')
        if column not in COLLECTIONS[table].__table__.columns:
            raise ValidationError(f"Unknown column '{column}' for table '{table}'")
        if op == 'in':
            if not (raw.startswith('(') and raw.endswith(')')):
                raise ValidationError(f"Malformed filter '{expr}'")
            values = tuple(v.strip() for v in raw[1:-1].split(',') if v.strip())
        else:
            values = (raw,)
        return cls(column, op, values)

    def matches(self, row):
        if row is None:
            return False
        value = row.get(self.column)
        text = '' if value is None else str(value)
        if self.op == 'neq':
            return text != self.values[0]
        return text in self.values

    def __repr__(self):
        if self.op == 'in':
            return f"{self.column}=in.({','.join(self.values)})"
        return f"{self.column}={self.op}.{self.values[0]}"


class Subscription:
    def __init__(self, feed, handle, table, events, row_filter, callback):
        self.feed = feed
        self.handle = handle
        self.table = table
        self.events = events
        self.row_filter = row_filter
        self.callback = callback
        self.active = True

    def matches(self, change):
        if not self.active or change.table != self.table or change.type not in self.events:
            return False
        return self.row_filter is None or self.row_filter.matches(change.row)

    def close(self):
        self.feed.unsubscribe(self)

    def __repr__(self):
        return f"<Subscription {self.handle} {self.table} {sorted(self.events)} {self.row_filter!r}>"


def _normalize_events(events):
    if events is None or events == '*':
        return frozenset(EVENT_TYPES)
    if isinstance(events, str):
        events = [events]
    normalized = set()
    for name in events:
        name = str(name).upper()
        if name == '*':
            return frozenset(EVENT_TYPES)
        if name not in EVENT_TYPES:
            raise ValidationError(f"Unknown event type '{name}'")
        normalized.add(name)
    if not normalized:
        raise ValidationError('At least one event type is required')
    return frozenset(normalized)


def _previous_values(obj, current):
    old = dict(current)
    state = inspect(obj)
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted and attr.key in old:
            old[attr.key] = history.deleted[0]
    return {k: (v.isoformat() if hasattr(v, 'isoformat') else v) for k, v in old.items()}


class ChangeFeed:
    def __init__(self, app=None):
        self.app = None
        self.sync = False
        self._lock = threading.RLock()
        self._subscriptions = {}
        self._handles = itertools.count(1)
        self._seq = 0
        # game id -> highest phase rank published for it
        self._phase_marks = {}
        self._queue = queue.Queue()
        self._draining = threading.local()
        self._dispatcher = None
        self._start_task = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app, start_task=None):
        self.app = app
        self.sync = bool(app.config.get('FEED_SYNC_DELIVERY', False))
        self._start_task = start_task
        with self._lock:
            # A new app starts with no subscribers
            for sub in self._subscriptions.values():
                sub.active = False
            self._subscriptions.clear()
            self._phase_marks.clear()
        app.extensions['change_feed'] = self
        if not event.contains(Session, 'before_flush', self._collect_deletes):
            event.listen(Session, 'before_flush', self._collect_deletes)
            event.listen(Session, 'after_flush', self._collect_writes)
            event.listen(Session, 'after_commit', self._publish)
            event.listen(Session, 'after_rollback', self._discard)

    @property
    def logger(self):
        return self.app.logger if self.app is not None else logging.getLogger(__name__)

    # ---- subscriptions ----

    def subscribe(self, table, events, filter_expr, callback):
        if table not in COLLECTIONS:
            raise ValidationError(f"Unknown table '{table}'")
        if not callable(callback):
            raise ValidationError('callback must be callable')
        sub_events = _normalize_events(events)
        row_filter = RowFilter.parse(filter_expr, table)
        with self._lock:
            handle = next(self._handles)
            sub = Subscription(self, handle, table, sub_events, row_filter, callback)
            self._subscriptions[handle] = sub
        self.logger.debug(f"[feed] subscribed {sub!r}")
        return sub

    def unsubscribe(self, handle):
        """Close a subscription by object or handle number. False if unknown."""
        key = handle.handle if isinstance(handle, Subscription) else handle
        with self._lock:
            sub = self._subscriptions.pop(key, None)
        if sub is None:
            return False
        sub.active = False
        self.logger.debug(f"[feed] unsubscribed {sub!r}")
        return True

    def subscription_count(self):
        with self._lock:
            return len(self._subscriptions)

    # ---- capture ----

    @staticmethod
    def _pending(session):
        return session.info.setdefault(_PENDING_KEY, [])

    def _collect_deletes(self, session, flush_context, instances):
        pending = self._pending(session)
        for obj in list(session.deleted):
            table = getattr(obj, '__tablename__', None)
            if table in COLLECTIONS:
                pending.append((table, DELETE, None, obj.to_dict()))

    def _collect_writes(self, session, flush_context):
        pending = self._pending(session)
        for obj in list(session.new):
            table = getattr(obj, '__tablename__', None)
            if table in COLLECTIONS:
                pending.append((table, INSERT, obj.to_dict(), None))
        for obj in list(session.dirty):
            table = getattr(obj, '__tablename__', None)
            if table in COLLECTIONS and session.is_modified(obj, include_collections=False):
                new = obj.to_dict()
                pending.append((table, UPDATE, new, _previous_values(obj, new)))

    def _discard(self, session):
        session.info.pop(_PENDING_KEY, None)

    def _is_stale_phase(self, kind, new, old):
        """Track the highest phase published per game; True for an update behind it.

        after_commit runs once the row lock is released, so two transitions of
        one game can reach this point in the opposite order to their commits.
        Must be called with the lock held.
        """
        if kind == DELETE:
            self._phase_marks.pop(old['id'], None)
            return False
        rank = phase_rank(new.get('phase'))
        mark = self._phase_marks.get(new['id'], -1)
        if rank < mark:
            return True
        self._phase_marks[new['id']] = rank
        return False

    def _publish(self, session):
        pending = session.info.pop(_PENDING_KEY, None)
        if not pending:
            return
        with self._lock:
            for table, kind, new, old in pending:
                if table == 'games' and self._is_stale_phase(kind, new, old):
                    self.logger.debug(f"[feed] dropped stale phase '{new['phase']}' for game={new['id']}")
                    continue
                self._seq += 1
                self._queue.put(RowChange(seq=self._seq, table=table, type=kind, new=new, old=old))
        if self.sync:
            self._drain()
        else:
            self._ensure_dispatcher()

    # ---- delivery ----

    def _drain(self):
        # A callback that commits publishes again; the outer loop picks that up in order
        if getattr(self._draining, 'active', False):
            return
        self._draining.active = True
        try:
            while True:
                try:
                    change = self._queue.get_nowait()
                except queue.Empty:
                    break
                if change is not None:
                    self._deliver(change)
        finally:
            self._draining.active = False

    def _ensure_dispatcher(self):
        with self._lock:
            if self._dispatcher is not None:
                return
            starter = self._start_task
            if starter is None:
                thread = threading.Thread(target=self._run, name='change-feed', daemon=True)
                thread.start()
                self._dispatcher = thread
            else:
                self._dispatcher = starter(self._run)

    def _run(self):
        while True:
            change = self._queue.get()
            if change is None:
                break
            if self.app is not None:
                with self.app.app_context():
                    self._deliver(change)
            else:
                self._deliver(change)
        with self._lock:
            self._dispatcher = None

    def stop(self, timeout=5):
        """Stop the background dispatcher after it delivers what is queued."""
        with self._lock:
            dispatcher = self._dispatcher
        if dispatcher is None:
            return
        self._queue.put(None)
        if hasattr(dispatcher, 'join'):
            dispatcher.join(timeout)

    def _deliver(self, change):
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(change)]
        for sub in targets:
            if not sub.active:
                continue
            try:
                sub.callback(change)
            except Exception:
                self.logger.exception(f"[feed] subscriber {sub.handle} failed on {change.table} #{change.seq}")
