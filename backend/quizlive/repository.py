from contextlib import contextmanager
from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from quizlive import db
from quizlive.errors import ConstraintViolation, NotFound, QuizLiveError, RepositoryError, StorageUnavailable
from quizlive.models import Choice, Game, Participant, Question, QuizSet


def _reason(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, 'orig', None)
    return str(orig if orig is not None else exc).strip().splitlines()[0]


class Repository:
    """Typed CRUD over quiz content and game sessions.

    Each write commits on its own and returns the persisted row. Failures are
    raised as RepositoryError subclasses after rolling the session back; no
    call is retried here.
    """

    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    @contextmanager
    def _guard(self, step: str, commit: bool = True):
        try:
            yield
            if commit:
                self.session.commit()
        except QuizLiveError as exc:
            self.session.rollback()
            current_app.logger.warning(f"[repo] {step} rejected: {exc.message}")
            raise
        except IntegrityError as exc:
            self.session.rollback()
            current_app.logger.warning(f"[repo] {step} violated a constraint: {_reason(exc)}")
            raise ConstraintViolation(f"{step} failed: {_reason(exc)}") from exc
        except DBAPIError as exc:
            self.session.rollback()
            current_app.logger.warning(f"[repo] {step} storage error: {_reason(exc)}")
            if exc.connection_invalidated or isinstance(exc, OperationalError):
                raise StorageUnavailable(f"{step} failed: storage unavailable") from exc
            raise RepositoryError(f"{step} failed: {_reason(exc)}") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            current_app.logger.warning(f"[repo] {step} failed: {_reason(exc)}")
            raise RepositoryError(f"{step} failed: {_reason(exc)}") from exc

    def _require(self, model, ident, label):
        row = self.session.get(model, ident)
        if row is None:
            raise ConstraintViolation(f"{label} {ident} does not exist")
        return row

    # ---- quiz sets ----

    def create_quiz_set(self, name: str, description: Optional[str] = None) -> QuizSet:
        quiz_set = QuizSet(name=name, description=description)
        with self._guard('Create quiz set'):
            self.session.add(quiz_set)
        return quiz_set

    def get_quiz_set(self, quiz_set_id: int) -> QuizSet:
        with self._guard('Load quiz set', commit=False):
            quiz_set = self.session.get(QuizSet, quiz_set_id)
        if quiz_set is None:
            raise NotFound(f"Quiz set {quiz_set_id} not found")
        return quiz_set

    def list_quiz_sets(self) -> List[QuizSet]:
        """All quiz sets, newest first, with questions and choices loaded."""
        with self._guard('List quiz sets', commit=False):
            return (
                QuizSet.query
                .options(selectinload(QuizSet.questions).selectinload(Question.choices))
                .order_by(QuizSet.created_at.desc(), QuizSet.id.desc())
                .all()
            )

    def delete_quiz_set(self, quiz_set_id: int) -> None:
        # Questions and choices go with it; games keep running with quiz_set_id NULL
        with self._guard('Delete quiz set'):
            quiz_set = self.session.get(QuizSet, quiz_set_id)
            if quiz_set is None:
                raise NotFound(f"Quiz set {quiz_set_id} not found")
            self.session.delete(quiz_set)

    # ---- questions and choices ----

    def create_question(self, quiz_set_id: int, body: str, order: int = 0,
                        image_url: Optional[str] = None, time_limit: Optional[int] = None) -> Question:
        question = Question(quiz_set_id=quiz_set_id, body=body, order=order,
                            image_url=image_url, time_limit=time_limit)
        with self._guard('Create question'):
            self._require(QuizSet, quiz_set_id, 'Quiz set')
            self.session.add(question)
        return question

    def list_questions(self, quiz_set_id: int) -> List[Question]:
        with self._guard('List questions', commit=False):
            return (
                Question.query.filter_by(quiz_set_id=quiz_set_id)
                .order_by(Question.order, Question.id)
                .all()
            )

    def create_choice(self, question_id: int, body: str, is_correct: bool = False) -> Choice:
        choice = Choice(question_id=question_id, body=body, is_correct=bool(is_correct))
        with self._guard('Create choice'):
            self._require(Question, question_id, 'Question')
            self.session.add(choice)
        return choice

    # ---- games ----

    def create_game(self, quiz_set_id: int) -> Game:
        game = Game(quiz_set_id=quiz_set_id, phase='lobby')
        with self._guard('Create game'):
            self._require(QuizSet, quiz_set_id, 'Quiz set')
            self.session.add(game)
        return game

    def get_game(self, game_id: int) -> Game:
        with self._guard('Load game', commit=False):
            game = self.session.get(Game, game_id)
        if game is None:
            raise NotFound(f"Game {game_id} not found")
        return game

    def update_game_phase(self, game_id: int, phase: str, guard=None) -> Game:
        """Set the phase of one game row.

        The row is read FOR UPDATE so concurrent transitions serialize on
        backends that support row locks. ``guard(game, phase)`` runs against
        the locked row and returns False to skip the write.
        """
        with self._guard('Update game phase'):
            game = Game.query.filter_by(id=game_id).with_for_update().first()
            if game is None:
                raise NotFound(f"Game {game_id} not found")
            if guard is None or guard(game, phase):
                game.phase = phase
        return game

    # ---- participants ----

    def create_participant(self, game_id: int, nickname: str) -> Participant:
        participant = Participant(game_id=game_id, nickname=nickname)
        try:
            with self._guard('Create participant'):
                self._require(Game, game_id, 'Game')
                self.session.add(participant)
        except ConstraintViolation as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ConstraintViolation(
                    f"Nickname '{nickname}' is already taken in this game") from exc.__cause__
            raise
        return participant

    def find_participant(self, game_id: int, nickname: str) -> Optional[Participant]:
        """The participant holding ``nickname`` in the game, or None."""
        with self._guard('Find participant', commit=False):
            return Participant.query.filter_by(game_id=game_id, nickname=nickname).one_or_none()

    def list_participants(self, game_id: int) -> List[Participant]:
        with self._guard('List participants', commit=False):
            return (
                Participant.query.filter_by(game_id=game_id)
                .order_by(Participant.created_at, Participant.id)
                .all()
            )
