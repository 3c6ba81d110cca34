from datetime import datetime, timezone

from quizlive import db

# Session phases in the order a game moves through them
PHASES = ('lobby', 'quiz', 'results')
PHASE_TRANSITIONS = {
    'lobby': {'quiz'},
    'quiz': {'results'},
    'results': set(),
}


def phase_rank(phase):
    """Position of a phase in the lobby < quiz < results order, -1 if unknown."""
    try:
        return PHASES.index(phase)
    except ValueError:
        return -1


def _utcnow():
    return datetime.now(timezone.utc)


def _isoformat(value):
    return value.isoformat() if value else None


class QuizSet(db.Model):
    __tablename__ = 'quiz_sets'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    questions = db.relationship(
        'Question', back_populates='quiz_set', cascade='all, delete-orphan',
        order_by='Question.order, Question.id')
    # Games are not owned: deleting the quiz set leaves them with quiz_set_id NULL
    games = db.relationship('Game', back_populates='quiz_set')

    def to_dict(self, include_questions=False):
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'created_at': _isoformat(self.created_at),
        }
        if include_questions:
            data['questions'] = [q.to_dict(include_choices=True) for q in self.questions]
        return data


class Question(db.Model):
    __tablename__ = 'questions'
    id = db.Column(db.Integer, primary_key=True)
    quiz_set_id = db.Column(db.Integer, db.ForeignKey('quiz_sets.id', ondelete='CASCADE'), nullable=False, index=True)
    body = db.Column(db.String(255), nullable=False)
    order = db.Column(db.Integer, nullable=False, default=0)
    image_url = db.Column(db.String(512), nullable=True)
    time_limit = db.Column(db.Integer, nullable=True)
    quiz_set = db.relationship('QuizSet', back_populates='questions')
    choices = db.relationship(
        'Choice', back_populates='question', cascade='all, delete-orphan', order_by='Choice.id')

    def to_dict(self, include_choices=False):
        data = {
            'id': self.id,
            'quiz_set_id': self.quiz_set_id,
            'body': self.body,
            'order': self.order,
            'image_url': self.image_url,
            'time_limit': self.time_limit,
        }
        if include_choices:
            data['choices'] = [c.to_dict() for c in self.choices]
        return data


class Choice(db.Model):
    __tablename__ = 'choices'
    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False, index=True)
    body = db.Column(db.String(255), nullable=False)
    is_correct = db.Column(db.Boolean, default=False, nullable=False)
    question = db.relationship('Question', back_populates='choices')

    def to_dict(self):
        return {
            'id': self.id,
            'question_id': self.question_id,
            'body': self.body,
            'is_correct': self.is_correct,
        }


class Game(db.Model):
    __tablename__ = 'games'
    id = db.Column(db.Integer, primary_key=True)
    quiz_set_id = db.Column(db.Integer, db.ForeignKey('quiz_sets.id', ondelete='SET NULL'), nullable=True, index=True)
    phase = db.Column(db.String(32), default='lobby', nullable=False)  # lobby, quiz, results
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    quiz_set = db.relationship('QuizSet', back_populates='games')
    participants = db.relationship('Participant', back_populates='game', order_by='Participant.id')

    def to_dict(self):
        # Column values only: this is also the row payload of change events
        return {
            'id': self.id,
            'quiz_set_id': self.quiz_set_id,
            'phase': self.phase,
            'created_at': _isoformat(self.created_at),
        }

    def to_state(self):
        data = self.to_dict()
        data['participants'] = [p.to_dict() for p in self.participants]
        return data


class Participant(db.Model):
    __tablename__ = 'participants'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id', ondelete='CASCADE'), nullable=False, index=True)
    nickname = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    game = db.relationship('Game', back_populates='participants')

    # One nickname per game, enforced by the store so racing inserts lose cleanly
    __table_args__ = (db.UniqueConstraint('game_id', 'nickname', name='uq_participants_game_nickname'),)

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'nickname': self.nickname,
            'created_at': _isoformat(self.created_at),
        }


# Collection name -> model, used by the change feed to validate subscriptions
COLLECTIONS = {
    model.__tablename__: model
    for model in (QuizSet, Question, Choice, Game, Participant)
}
