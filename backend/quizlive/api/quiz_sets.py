from flask import Blueprint, Response, current_app, jsonify, request

from quizlive.api import json_body
from quizlive.errors import ValidationError
from quizlive.repository import Repository
from quizlive.services.authoring import author_quiz
from quizlive.services.importer import CSV_TEMPLATE, import_quiz, parse_csv, row_from_record
from quizlive.services.session import join_url, start_game

quiz_sets = Blueprint('quiz_sets', __name__)


@quiz_sets.route('', methods=['GET'])
def list_quiz_sets():
    """Dashboard listing: newest first, questions and choices nested."""
    return jsonify([qs.to_dict(include_questions=True) for qs in Repository().list_quiz_sets()])


@quiz_sets.route('', methods=['POST'])
def create_quiz_set():
    data = json_body()
    quiz_set = author_quiz(data.get('name'), data.get('questions'), description=data.get('description'))
    return jsonify(quiz_set.to_dict(include_questions=True)), 201


def _import_source():
    """Rows and requested name from an upload, a CSV string or JSON records."""
    if 'file' in request.files:
        raw = request.files['file'].read()
        try:
            text = raw.decode('utf-8-sig')
        except UnicodeDecodeError as exc:
            raise ValidationError('CSV file must be UTF-8 encoded') from exc
        name = request.form.get('name')
        return parse_csv(text), name
    data = json_body()
    name = data.get('name')
    if name is not None and not isinstance(name, str):
        raise ValidationError('name must be a string')
    if data.get('rows') is not None:
        rows = data['rows']
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ValidationError('rows must be a list of objects')
        return [row_from_record(r) for r in rows], name
    csv_text = data.get('csv') or ''
    if not isinstance(csv_text, str):
        raise ValidationError('csv must be a string')
    return parse_csv(csv_text), name


@quiz_sets.route('/import', methods=['POST'])
def import_quiz_set():
    rows, name = _import_source()
    if not rows:
        # Nothing selected: silent no-op
        return jsonify({'quiz_set': None, 'questions_created': 0, 'choices_created': 0, 'errors': []}), 200
    report = import_quiz(rows, name=name)
    if report.cancelled:
        raise ValidationError('Quiz set name is required')
    if report.errors:
        current_app.logger.warning(
            f"[import] quiz_set={report.quiz_set.id} finished with {len(report.errors)} row error(s)")
    return jsonify(report.to_dict()), 201


@quiz_sets.route('/template.csv', methods=['GET'])
def download_template():
    return Response(
        CSV_TEMPLATE,
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=quiz_template.csv'},
    )


@quiz_sets.route('/<int:quiz_set_id>', methods=['DELETE'])
def delete_quiz_set(quiz_set_id):
    Repository().delete_quiz_set(quiz_set_id)
    current_app.logger.info(f"[quiz_set] deleted quiz_set={quiz_set_id}")
    return jsonify({'message': f'Quiz set {quiz_set_id} deleted'}), 200


@quiz_sets.route('/<int:quiz_set_id>/games', methods=['POST'])
def create_game(quiz_set_id):
    game = start_game(quiz_set_id)
    return jsonify({'game': game.to_dict(), 'join_url': join_url(game.id)}), 201
