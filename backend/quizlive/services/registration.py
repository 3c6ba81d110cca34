"""Participant registration for one game.

States: idle -> checking -> (registered | joining) -> registered.

Choosing a nickname looks up an existing participant with it first, so a
player who reloads the page rejoins as themselves. Otherwise the client
stays in ``joining`` until the nickname is submitted. The lookup and the
insert are not atomic: two clients can both see the nickname free. The
unique (game_id, nickname) constraint in the store decides the race and the
loser gets a ConstraintViolation and goes back to ``joining``.
"""

from flask import current_app

from quizlive.errors import QuizLiveError, ValidationError
from quizlive.repository import Repository

IDLE = 'idle'
CHECKING = 'checking'
JOINING = 'joining'
REGISTERED = 'registered'


def validate_nickname(nickname):
    max_length = int(current_app.config.get('MAX_NICKNAME_LENGTH', 20))
    if nickname is not None and not isinstance(nickname, str):
        raise ValidationError('Nickname must be a string')
    if not nickname or not nickname.strip():
        raise ValidationError('Nickname is required')
    if len(nickname) > max_length:
        raise ValidationError(f'Nickname must be at most {max_length} characters')
    return nickname


class Registration:
    def __init__(self, game_id, repo=None, on_registered=None):
        self.game_id = game_id
        self.repo = repo or Repository()
        self.on_registered = on_registered
        self.state = IDLE
        self.nickname = ''
        self.participant = None
        self.error = None
        self.closed = False

    @property
    def registered(self):
        return self.state == REGISTERED

    def close(self):
        """Tear down: results of calls still in flight are dropped."""
        self.closed = True

    def _complete(self, participant):
        self.participant = participant
        self.state = REGISTERED
        self.error = None
        current_app.logger.info(
            f"[register] game={self.game_id} nickname={participant.nickname!r} participant={participant.id}")
        if self.on_registered is not None:
            self.on_registered(participant)
        return participant

    def set_nickname(self, nickname):
        """Look up ``nickname`` in the game and rejoin if it already exists.

        Returns the participant when rejoined, None when a join is needed.
        """
        if self.closed or self.state == REGISTERED:
            return self.participant
        self.nickname = nickname or ''
        if not self.nickname:
            self.state = IDLE
            return None

        self.state = CHECKING
        try:
            existing = self.repo.find_participant(self.game_id, self.nickname)
        except QuizLiveError as exc:
            if not self.closed:
                self.state = JOINING
                self.error = exc
            raise
        if self.closed or self.nickname != (nickname or ''):
            # torn down or nickname changed while the lookup ran
            return None
        if existing is not None:
            return self._complete(existing)
        self.state = JOINING
        return None

    def submit(self, nickname=None):
        """Create the participant. Raises the store's failure on conflict."""
        if self.closed:
            return None
        if self.state == REGISTERED:
            return self.participant
        if nickname is not None:
            self.nickname = nickname
        validate_nickname(self.nickname)

        try:
            participant = self.repo.create_participant(self.game_id, self.nickname)
        except QuizLiveError as exc:
            current_app.logger.warning(
                f"[register] game={self.game_id} nickname={self.nickname!r} rejected: {exc.message}")
            if not self.closed:
                self.state = JOINING
                self.error = exc
            raise
        if self.closed:
            return None
        return self._complete(participant)


def register(game_id, nickname, repo=None):
    """Rejoin with ``nickname`` if it is taken in the game, else join.

    Returns ``(participant, created)``.
    """
    validate_nickname(nickname)
    registration = Registration(game_id, repo=repo)
    existing = registration.set_nickname(nickname)
    if existing is not None:
        return existing, False
    return registration.submit(), True
