import threading
from types import SimpleNamespace

import pytest
from sqlalchemy import event
from sqlalchemy.orm import Session

from quizlive import db
from quizlive.errors import ValidationError
from quizlive.models import PHASES, Game
from quizlive.realtime.channel import SessionChannel
from quizlive.realtime.events import ParticipantJoined, PhaseChanged
from quizlive.realtime.feed import _PENDING_KEY, RowFilter
from quizlive.realtime.views import LobbyState, LobbyView, PlayerView, reduce_state
from quizlive.repository import Repository
from quizlive.services.registration import Registration
from quizlive.services.session import advance_phase


# ---------------------------------------------------------------------------
# Change feed
# ---------------------------------------------------------------------------

class TestChangeFeed:
    def test_insert_delivered_only_for_matching_game(self, repo, quiz_set, game, change_feed):
        other = repo.create_game(quiz_set.id)
        seen = []
        change_feed.subscribe('participants', ['INSERT'], f'game_id=eq.{game.id}', seen.append)
        repo.create_participant(game.id, 'ana')
        repo.create_participant(other.id, 'ben')
        assert [c.new['nickname'] for c in seen] == ['ana']
        assert seen[0].type == 'INSERT' and seen[0].old is None

    def test_update_carries_old_and_new_phase(self, game, change_feed):
        seen = []
        change_feed.subscribe('games', 'UPDATE', f'id=eq.{game.id}', seen.append)
        advance_phase(game.id, 'quiz')
        assert len(seen) == 1
        assert seen[0].old['phase'] == 'lobby'
        assert seen[0].new['phase'] == 'quiz'

    def test_rolled_back_write_is_never_published(self, flask_app, game, change_feed):
        seen = []
        change_feed.subscribe('games', '*', None, seen.append)
        g = db.session.get(Game, game.id)
        g.phase = 'quiz'
        db.session.flush()
        db.session.rollback()
        assert seen == []

    def test_sequence_follows_commit_order(self, repo, game, change_feed):
        seen = []
        change_feed.subscribe('participants', 'INSERT', f'game_id=eq.{game.id}', seen.append)
        for name in ('p1', 'p2', 'p3'):
            repo.create_participant(game.id, name)
        seqs = [c.seq for c in seen]
        assert seqs == sorted(seqs) and len(set(seqs)) == 3
        assert [c.new['nickname'] for c in seen] == ['p1', 'p2', 'p3']

    def test_unsubscribe_stops_delivery(self, repo, game, change_feed):
        seen = []
        sub = change_feed.subscribe('participants', 'INSERT', None, seen.append)
        before = change_feed.subscription_count()
        repo.create_participant(game.id, 'first')
        assert change_feed.unsubscribe(sub) is True
        assert change_feed.unsubscribe(sub) is False
        assert change_feed.subscription_count() == before - 1
        repo.create_participant(game.id, 'second')
        assert [c.new['nickname'] for c in seen] == ['first']

    def test_failing_subscriber_does_not_block_others(self, repo, game, change_feed):
        seen = []

        def explode(change):
            raise RuntimeError('observer bug')

        change_feed.subscribe('participants', 'INSERT', None, explode)
        change_feed.subscribe('participants', 'INSERT', None, seen.append)
        repo.create_participant(game.id, 'zoe')
        assert len(seen) == 1

    def test_cascade_delete_publishes_each_row(self, repo, quiz_set, change_feed):
        tables = []
        for table in ('quiz_sets', 'questions', 'choices'):
            change_feed.subscribe(table, 'DELETE', None, lambda c: tables.append((c.table, c.old['id'])))
        repo.delete_quiz_set(quiz_set.id)
        assert sorted(t for t, _ in tables) == ['choices', 'choices', 'questions', 'quiz_sets']

    def test_bad_subscriptions_rejected(self, flask_app, change_feed):
        with pytest.raises(ValidationError):
            change_feed.subscribe('scores', '*', None, print)
        with pytest.raises(ValidationError):
            change_feed.subscribe('games', 'UPSERT', None, print)
        with pytest.raises(ValidationError):
            change_feed.subscribe('games', '*', 'id==5', print)
        with pytest.raises(ValidationError):
            change_feed.subscribe('games', '*', 'colour=eq.red', print)

    def test_subscription_close_stops_delivery(self, repo, game, change_feed):
        seen = []
        sub = change_feed.subscribe('participants', 'INSERT', None, seen.append)
        sub.close()
        assert not sub.active
        repo.create_participant(game.id, 'quiet')
        assert seen == []

    def test_phase_published_behind_a_later_one_is_dropped(self, flask_app, change_feed):
        seen = []
        change_feed.subscribe('games', 'UPDATE', 'id=eq.41', lambda c: seen.append(c.new['phase']))

        def committed(new_phase, old_phase, **extra):
            row = dict({'id': 41, 'quiz_set_id': 1, 'phase': new_phase}, **extra)
            old = dict(row, phase=old_phase)
            return SimpleNamespace(info={_PENDING_KEY: [('games', 'UPDATE', row, old)]})

        # results was committed second but reached the feed first
        change_feed._publish(committed('results', 'quiz'))
        change_feed._publish(committed('quiz', 'lobby'))
        # same phase, other column: still delivered
        change_feed._publish(committed('results', 'results', quiz_set_id=None))
        assert seen == ['results', 'results']

    def test_racing_transitions_never_show_a_phase_going_back(self, file_app, run_in_threads):
        feed = file_app.extensions['change_feed']
        repo = Repository()
        game_id = repo.create_game(repo.create_quiz_set('Race').id).id
        seen = []
        feed.subscribe('games', 'UPDATE', f'id=eq.{game_id}', lambda c: seen.append(c.new['phase']))

        quiz_committed = threading.Event()
        results_published = threading.Event()

        def hold_quiz_publish(session):
            if threading.current_thread().name == 'to-quiz' and not quiz_committed.is_set():
                quiz_committed.set()
                results_published.wait(5)

        def to_results():
            quiz_committed.wait(5)
            try:
                return advance_phase(game_id, 'results').phase
            finally:
                results_published.set()

        event.listen(Session, 'after_commit', hold_quiz_publish, insert=True)
        try:
            outcome = run_in_threads(
                ('to-quiz', lambda: advance_phase(game_id, 'quiz').phase),
                ('to-results', to_results),
            )
        finally:
            event.remove(Session, 'after_commit', hold_quiz_publish)

        assert outcome == {'to-quiz': 'quiz', 'to-results': 'results'}
        assert seen == ['results']

    def test_background_dispatcher_delivers(self, repo, game, change_feed):
        delivered = threading.Event()
        seen = []

        def record(change):
            seen.append(change)
            delivered.set()

        change_feed.subscribe('games', 'UPDATE', f'id=eq.{game.id}', record)
        start_task = change_feed._start_task
        change_feed.sync = False
        change_feed._start_task = None  # plain thread regardless of the Socket.IO async mode
        try:
            advance_phase(game.id, 'quiz')
            assert delivered.wait(timeout=5)
        finally:
            change_feed.stop()
            change_feed.sync = True
            change_feed._start_task = start_task
        assert seen[0].new['phase'] == 'quiz'


class TestRowFilter:
    def test_operators(self):
        assert RowFilter.parse('id=eq.5', 'games').matches({'id': 5})
        assert not RowFilter.parse('id=eq.5', 'games').matches({'id': 6})
        assert RowFilter.parse('phase=neq.lobby', 'games').matches({'phase': 'quiz'})
        in_filter = RowFilter.parse('game_id=in.(1,2)', 'participants')
        assert in_filter.matches({'game_id': 2})
        assert not in_filter.matches({'game_id': 3})
        assert RowFilter.parse(None, 'games') is None


# ---------------------------------------------------------------------------
# Session channel
# ---------------------------------------------------------------------------

def test_channel_delivers_phase_changed(game, change_feed):
    events = []
    with SessionChannel(change_feed, game.id, 'games', events.append):
        advance_phase(game.id, 'quiz')
    advance_phase(game.id, 'results')
    assert len(events) == 1
    assert isinstance(events[0], PhaseChanged)
    assert (events[0].game_id, events[0].previous, events[0].phase) == (game.id, 'lobby', 'quiz')


def test_every_open_channel_sees_the_transition(game, change_feed):
    host, player = [], []
    SessionChannel(change_feed, game.id, 'games', host.append)
    SessionChannel(change_feed, game.id, 'games', player.append)
    advance_phase(game.id, 'quiz')
    assert [e.phase for e in host] == ['quiz']
    assert [e.phase for e in player] == ['quiz']


def test_channel_delivers_participant_joined(repo, game, change_feed):
    events = []
    channel = SessionChannel(change_feed, game.id, 'participants', events.append)
    repo.create_participant(game.id, 'lee')
    channel.close()
    repo.create_participant(game.id, 'max')
    assert [type(e) for e in events] == [ParticipantJoined]
    assert events[0].participant['nickname'] == 'lee'


def test_closed_channel_drops_already_matched_change(game, change_feed):
    events = []
    channel = SessionChannel(change_feed, game.id, 'games', events.append)
    channel.closed = True  # torn down between matching and delivery
    advance_phase(game.id, 'quiz')
    assert events == []


def test_channel_only_for_session_tables(game, change_feed):
    with pytest.raises(ValidationError):
        SessionChannel(change_feed, game.id, 'choices', print)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

def test_reduce_state_is_idempotent_and_monotone():
    state = LobbyState(game_id=1)
    joined = ParticipantJoined(1, {'id': 7, 'nickname': 'ivy', 'game_id': 1}, seq=3)
    once = reduce_state(state, joined)
    assert reduce_state(once, joined) is once
    quiz = reduce_state(once, PhaseChanged(1, 'quiz', 'lobby', seq=4))
    assert quiz.phase == 'quiz'
    # a stale echo of an older phase is ignored
    assert reduce_state(quiz, PhaseChanged(1, 'lobby', None, seq=2)) is quiz


def test_lobby_view_tracks_registrations_and_navigates(repo, game, change_feed):
    existing = repo.create_participant(game.id, 'early')
    phases, states = [], []
    view = LobbyView(change_feed, game, participants=[existing], on_change=states.append, on_phase=phases.append)

    Registration(game.id, repo=repo).submit('late')
    assert view.state.nicknames == ('early', 'late')

    advance_phase(game.id, 'quiz')
    advance_phase(game.id, 'quiz')
    assert phases == ['quiz']
    assert view.state.phase == 'quiz'

    view.close()
    assert view.closed
    advance_phase(game.id, 'results')
    assert view.state.phase == 'quiz'


def test_player_view_observes_non_decreasing_phases(repo, game, change_feed):
    participant = repo.create_participant(game.id, 'pia')
    observed = []
    view = PlayerView(change_feed, game, participant, on_phase=observed.append)
    advance_phase(game.id, 'quiz')
    advance_phase(game.id, 'results')
    # replayed delivery of an old event
    view.dispatch(PhaseChanged(game.id, 'quiz', 'lobby', seq=1))
    assert observed == ['quiz', 'results']
    ranks = [PHASES.index(p) for p in observed]
    assert ranks == sorted(ranks)
    assert view.participant['nickname'] == 'pia'
    view.close()
