"""Bulk import of quiz sets from tabular (CSV) data.

Source format, one question per row:

    Question,Answer 1,Answer 2,Answer 3,Answer 4,Time limit (sec),Correct answer(s)
    What is the capital of France?,Paris,Lyon,Marseille,Nice,30,1

``Correct answer(s)`` is a comma separated list of 1-based answer positions
(``"1,3"``). Blank answer cells are skipped.

The import is a forward-only sequence of writes with no surrounding
transaction. The quiz set is created first and a failure there aborts the
whole import. After that each row is best effort: a question that fails to
insert skips its row, a choice that fails to insert is reported and the rest
carry on. A crash midway leaves the quiz set with a prefix of its rows.
"""

import csv
import io
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional, Tuple

from flask import current_app

from quizlive.errors import RepositoryError, ValidationError
from quizlive.repository import Repository

QUESTION_COLUMN = 'Question'
ANSWER_COLUMNS = tuple(f'Answer {i}' for i in range(1, 5))
TIME_LIMIT_COLUMN = 'Time limit (sec)'
CORRECT_COLUMN = 'Correct answer(s)'
CSV_HEADER = (QUESTION_COLUMN,) + ANSWER_COLUMNS + (TIME_LIMIT_COLUMN, CORRECT_COLUMN)

CSV_TEMPLATE = (
    ','.join(CSV_HEADER) + '\n'
    'What is the capital of France?,Paris,Lyon,Marseille,Nice,30,1\n'
)

DEFAULT_QUIZ_NAME = 'Imported Quiz'
IMPORT_DESCRIPTION = 'Imported from CSV'


class CsvFormatError(ValidationError):
    """The CSV source could not be turned into import rows."""


@dataclass(frozen=True)
class ImportRow:
    question: str
    answers: Tuple[str, ...]
    time_limit: Optional[int] = None
    correct: FrozenSet[int] = frozenset()


@dataclass
class RowFailure:
    row: int  # 1-based position in the source
    step: str
    message: str
    retryable: bool = False

    def to_dict(self):
        return {'row': self.row, 'step': self.step, 'message': self.message, 'retryable': self.retryable}


@dataclass
class ImportReport:
    quiz_set: object = None
    questions_created: int = 0
    choices_created: int = 0
    errors: List[RowFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self):
        return not self.errors

    def to_dict(self):
        return {
            'quiz_set': self.quiz_set.to_dict() if self.quiz_set is not None else None,
            'questions_created': self.questions_created,
            'choices_created': self.choices_created,
            'errors': [e.to_dict() for e in self.errors],
        }


def parse_correct_answers(text) -> FrozenSet[int]:
    """``"1, 3"`` -> {1, 3}. Anything that is not a positive integer is ignored."""
    picked = set()
    for part in str(text or '').split(','):
        part = part.strip()
        if part.isdigit() and int(part) > 0:
            picked.add(int(part))
    return frozenset(picked)


def parse_time_limit(text) -> Optional[int]:
    try:
        value = int(float(str(text).strip()))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def row_from_record(record: dict) -> ImportRow:
    def cell(name):
        value = record.get(name)
        return '' if value is None else str(value)

    return ImportRow(
        question=cell(QUESTION_COLUMN),
        answers=tuple(cell(name) for name in ANSWER_COLUMNS),
        time_limit=parse_time_limit(record.get(TIME_LIMIT_COLUMN)),
        correct=parse_correct_answers(record.get(CORRECT_COLUMN)),
    )


def parse_csv(text: str) -> List[ImportRow]:
    """Parse CSV text with a header row into import rows, skipping blank lines."""
    if text is None:
        return []
    text = text.lstrip('\ufeff')
    if not text.strip():
        return []
    reader = csv.DictReader(io.StringIO(text, newline=''))
    try:
        fieldnames = [(name or '').strip() for name in (reader.fieldnames or [])]
    except csv.Error as exc:
        raise CsvFormatError(f'CSV Parse Error: {exc}') from exc
    if QUESTION_COLUMN not in fieldnames:
        raise CsvFormatError(f"CSV Parse Error: missing '{QUESTION_COLUMN}' column")
    reader.fieldnames = fieldnames

    rows = []
    try:
        for record in reader:
            values = [v for k, v in record.items() if k is not None]
            if all(not (v or '').strip() for v in values):
                continue
            rows.append(row_from_record(record))
    except csv.Error as exc:
        raise CsvFormatError(f'CSV Parse Error on line {reader.line_num}: {exc}') from exc
    return rows


def default_quiz_name(rows: List[ImportRow]) -> str:
    length = int(current_app.config.get('DEFAULT_QUIZ_NAME_LENGTH', 30))
    return rows[0].question[:length] or DEFAULT_QUIZ_NAME


def import_quiz(rows: List[ImportRow], name: Optional[str] = None,
                choose_name: Optional[Callable[[str], Optional[str]]] = None,
                repo: Optional[Repository] = None) -> ImportReport:
    """Persist ``rows`` as one new quiz set.

    ``choose_name(default)`` is asked for the quiz set name when given,
    otherwise ``name`` is used, falling back to the default derived from the
    first question. An empty source or an empty chosen name creates nothing.
    Raises the RepositoryError if the quiz set itself cannot be created.
    """
    report = ImportReport()
    if not rows:
        return report

    default = default_quiz_name(rows)
    if choose_name is not None:
        name = choose_name(default)
    elif name is None:
        name = default
    if not name or not str(name).strip():
        report.cancelled = True
        return report

    repo = repo or Repository()
    cfg = current_app.config
    question_max = int(cfg.get('QUESTION_BODY_MAX_LENGTH', 120))
    choice_max = int(cfg.get('CHOICE_BODY_MAX_LENGTH', 75))
    max_answers = int(cfg.get('MAX_ANSWERS_PER_QUESTION', 4))
    default_limit = int(cfg.get('DEFAULT_TIME_LIMIT_SEC', 30))
    sequential = bool(cfg.get('IMPORT_SEQUENTIAL_ORDER', True))

    report.quiz_set = repo.create_quiz_set(name=str(name), description=IMPORT_DESCRIPTION)
    quiz_set_id = report.quiz_set.id
    current_app.logger.info(f"[import] quiz_set={quiz_set_id} name={name!r} rows={len(rows)}")

    for index, row in enumerate(rows, start=1):
        body = row.question[:question_max]
        answers = [(pos, text[:choice_max]) for pos, text in enumerate(row.answers[:max_answers], start=1)
                   if text.strip()]
        if not body.strip():
            report.errors.append(RowFailure(index, 'validate', 'Question text is empty'))
            continue
        if not answers:
            report.errors.append(RowFailure(index, 'validate', 'Question has no answers'))
            continue

        try:
            question = repo.create_question(
                quiz_set_id=quiz_set_id,
                body=body,
                order=(index - 1) if sequential else 0,
                time_limit=row.time_limit or default_limit,
            )
        except RepositoryError as exc:
            current_app.logger.warning(f"[import] quiz_set={quiz_set_id} row={index} question skipped: {exc.message}")
            report.errors.append(RowFailure(index, 'question', exc.message, exc.retryable))
            continue
        report.questions_created += 1

        question_id = question.id
        for pos, text in answers:
            try:
                repo.create_choice(question_id=question_id, body=text, is_correct=pos in row.correct)
            except RepositoryError as exc:
                current_app.logger.warning(
                    f"[import] quiz_set={quiz_set_id} row={index} answer={pos} failed: {exc.message}")
                report.errors.append(RowFailure(index, f'answer {pos}', exc.message, exc.retryable))
                continue
            report.choices_created += 1

    current_app.logger.info(
        f"[import] quiz_set={quiz_set_id} done questions={report.questions_created} "
        f"choices={report.choices_created} errors={len(report.errors)}")
    return report
