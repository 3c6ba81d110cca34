from flask import current_app

from quizlive.errors import RepositoryError, ValidationError
from quizlive.repository import Repository


def _text(value):
    return '' if value is None else str(value)


def validate_authored_quiz(name, questions):
    """Reject a hand-written quiz before anything is stored.

    Each question needs text, at least one choice, non-empty choice texts and
    exactly one choice marked correct.
    """
    cfg = current_app.config
    question_max = int(cfg.get('QUESTION_BODY_MAX_LENGTH', 120))
    choice_max = int(cfg.get('CHOICE_BODY_MAX_LENGTH', 75))

    if name is not None and not isinstance(name, str):
        raise ValidationError('Quiz name must be a string')
    if not _text(name).strip():
        raise ValidationError('Quiz name is required')
    if not isinstance(questions, list) or not questions:
        raise ValidationError('A quiz needs at least one question')
    for q_idx, question in enumerate(questions, start=1):
        if not isinstance(question, dict):
            raise ValidationError(f'Question {q_idx} must be an object')
        text = _text(question.get('text'))
        if not text.strip():
            raise ValidationError(f'Question {q_idx} has no text')
        if len(text) > question_max:
            raise ValidationError(f'Question {q_idx} is longer than {question_max} characters')
        time_limit = question.get('time_limit')
        if time_limit is not None and (isinstance(time_limit, bool) or not isinstance(time_limit, int) or time_limit <= 0):
            raise ValidationError(f'Question {q_idx} time limit must be a positive number of seconds')
        if question.get('image_url') is not None and not isinstance(question['image_url'], str):
            raise ValidationError(f'Question {q_idx} image_url must be a string')
        choices = question.get('choices')
        if not isinstance(choices, list) or not choices:
            raise ValidationError(f'Question {q_idx} has no choices')
        for c_idx, choice in enumerate(choices, start=1):
            if not isinstance(choice, dict):
                raise ValidationError(f'Choice {c_idx} of question {q_idx} must be an object')
            body = _text(choice.get('text'))
            if not body.strip():
                raise ValidationError(f'Choice {c_idx} of question {q_idx} has no text')
            if len(body) > choice_max:
                raise ValidationError(f'Choice {c_idx} of question {q_idx} is longer than {choice_max} characters')
        correct = sum(1 for choice in choices if choice.get('is_correct'))
        if correct != 1:
            raise ValidationError(f'Question {q_idx} must have exactly one correct choice (has {correct})')


def author_quiz(name, questions, description=None, repo=None):
    """Create a quiz set from hand-authored questions.

    ``questions`` is a list of ``{'text', 'image_url'?, 'choices': [{'text',
    'is_correct'}]}``. Input is validated up front; writes then go forward
    one row at a time and stop at the first failure, which is re-raised
    naming the failed step. Rows written before it stay.
    """
    validate_authored_quiz(name, questions)
    repo = repo or Repository()
    sequential = bool(current_app.config.get('IMPORT_SEQUENTIAL_ORDER', True))

    step = 'Failed to create quiz set'
    try:
        quiz_set = repo.create_quiz_set(name=_text(name).strip(), description=description)
        for q_idx, q in enumerate(questions):
            step = f'Failed to create question {q_idx + 1}'
            question = repo.create_question(
                quiz_set_id=quiz_set.id,
                body=_text(q.get('text')),
                order=q_idx if sequential else 0,
                image_url=q.get('image_url'),
                time_limit=q.get('time_limit'),
            )
            for c_idx, c in enumerate(q['choices']):
                step = f'Failed to create choice {c_idx + 1} of question {q_idx + 1}'
                repo.create_choice(question_id=question.id, body=_text(c.get('text')),
                                   is_correct=bool(c.get('is_correct')))
    except RepositoryError as exc:
        current_app.logger.warning(f"[author] {step}: {exc.message}")
        raise type(exc)(f'{step}: {exc.message}', retryable=exc.retryable) from exc

    current_app.logger.info(f"[author] quiz_set={quiz_set.id} questions={len(questions)}")
    return quiz_set
