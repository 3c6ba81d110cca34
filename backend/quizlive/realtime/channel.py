from quizlive.errors import ValidationError
from quizlive.realtime.events import INSERT, UPDATE, ParticipantJoined, PhaseChanged

# table -> (column tying a row to its game, events watched by default)
SESSION_TABLES = {
    'games': ('id', (UPDATE,)),
    'participants': ('game_id', (INSERT,)),
}


class SessionChannel:
    """One subscription scoped to a game, delivering typed events.

    Rows from ``games`` become PhaseChanged, rows from ``participants``
    become ParticipantJoined. Nothing reaches the observer after close(),
    even if it was already queued.
    """

    def __init__(self, feed, game_id, table, observer, events=None):
        if table not in SESSION_TABLES:
            raise ValidationError(f"No session channel for table '{table}'")
        column, default_events = SESSION_TABLES[table]
        self.feed = feed
        self.game_id = game_id
        self.table = table
        self.observer = observer
        self.closed = False
        self.subscription = feed.subscribe(
            table, events or default_events, f"{column}=eq.{game_id}", self._on_change)

    def _translate(self, change):
        if self.table == 'games':
            if change.new is None:
                return None
            previous = change.old.get('phase') if change.old else None
            return PhaseChanged(game_id=self.game_id, phase=change.new['phase'],
                                previous=previous, seq=change.seq)
        if change.new is None:
            return None
        return ParticipantJoined(game_id=self.game_id, participant=change.new, seq=change.seq)

    def _on_change(self, change):
        if self.closed:
            return
        event = self._translate(change)
        if event is not None:
            self.observer(event)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.subscription.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
