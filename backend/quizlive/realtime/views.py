"""Host and player views of a game, rebuilt from delivered events.

The state held by a view is an immutable LobbyState. Each event produces a
new state from the previous one and the event payload, so a duplicated or
replayed event leaves it unchanged: participants are keyed by id and the
phase only moves forward.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from quizlive.models import phase_rank
from quizlive.realtime.channel import SessionChannel
from quizlive.realtime.events import ParticipantJoined, PhaseChanged


@dataclass(frozen=True)
class LobbyState:
    game_id: int
    phase: str = 'lobby'
    participants: Tuple[dict, ...] = ()
    seq: int = 0

    @property
    def nicknames(self):
        return tuple(p['nickname'] for p in self.participants)


def reduce_state(state: LobbyState, event) -> LobbyState:
    if isinstance(event, PhaseChanged):
        if phase_rank(event.phase) <= phase_rank(state.phase):
            return state
        return replace(state, phase=event.phase, seq=max(state.seq, event.seq))
    if isinstance(event, ParticipantJoined):
        by_id = {p['id']: p for p in state.participants}
        by_id[event.participant['id']] = dict(event.participant)
        ordered = tuple(sorted(by_id.values(), key=lambda p: p['id']))
        if ordered == state.participants:
            return state
        return replace(state, participants=ordered, seq=max(state.seq, event.seq))
    return state


class GameView:
    """Base view: one phase channel, optional participant channel."""

    watch_participants = False

    def __init__(self, feed, game, participants=(), on_change=None, on_phase=None):
        self.feed = feed
        self.on_change = on_change
        self.on_phase = on_phase
        self.state = LobbyState(game_id=game.id, phase=game.phase)
        for p in participants:
            self.state = reduce_state(self.state, ParticipantJoined(game.id, p.to_dict()))
        self.channels = [SessionChannel(feed, game.id, 'games', self.dispatch)]
        if self.watch_participants:
            self.channels.append(SessionChannel(feed, game.id, 'participants', self.dispatch))

    @property
    def closed(self):
        return all(channel.closed for channel in self.channels)

    def dispatch(self, event):
        previous = self.state
        self.state = reduce_state(previous, event)
        if self.state is previous:
            return
        if self.on_change is not None:
            self.on_change(self.state)
        if self.state.phase != previous.phase and self.on_phase is not None:
            self.on_phase(self.state.phase)

    def close(self):
        for channel in self.channels:
            channel.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class LobbyView(GameView):
    """What the host sees: joined participants and the current phase."""

    watch_participants = True


class PlayerView(GameView):
    """What one participant sees: the phase, plus who they registered as."""

    def __init__(self, feed, game, participant, on_change=None, on_phase=None):
        super().__init__(feed, game, on_change=on_change, on_phase=on_phase)
        self.participant: Optional[dict] = participant.to_dict()
