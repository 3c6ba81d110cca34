from flask import Blueprint, jsonify, request

from quizlive.api import json_body
from quizlive.errors import ValidationError
from quizlive.repository import Repository
from quizlive.services.registration import register, validate_nickname
from quizlive.services.session import advance_phase, join_url

games = Blueprint('games', __name__)


@games.route('/<int:game_id>', methods=['GET'])
def get_game_state(game_id):
    game = Repository().get_game(game_id)
    payload = game.to_state()
    payload['join_url'] = join_url(game.id)
    return jsonify(payload)


@games.route('/<int:game_id>/phase', methods=['POST'])
def change_phase(game_id):
    """Host action: move the game to the requested phase."""
    data = json_body()
    phase = data.get('phase')
    if not phase:
        raise ValidationError('phase is required')
    game = advance_phase(game_id, phase)
    return jsonify(game.to_dict())


@games.route('/<int:game_id>/participants', methods=['GET'])
def get_participants(game_id):
    repo = Repository()
    nickname = request.args.get('nickname')
    if nickname is not None:
        participant = repo.find_participant(game_id, nickname)
        return jsonify({'participant': participant.to_dict() if participant else None})
    return jsonify([p.to_dict() for p in repo.list_participants(game_id)])


@games.route('/<int:game_id>/participants', methods=['POST'])
def create_participant(game_id):
    data = json_body()
    nickname = validate_nickname(data.get('nickname'))
    participant = Repository().create_participant(game_id, nickname)
    return jsonify(participant.to_dict()), 201


@games.route('/<int:game_id>/register', methods=['POST'])
def register_participant(game_id):
    """Join with a nickname, or rejoin as the participant already holding it."""
    data = json_body()
    participant, created = register(game_id, data.get('nickname'))
    return jsonify(participant.to_dict()), (201 if created else 200)


@games.route('/<int:game_id>/join-target', methods=['GET'])
def get_join_target(game_id):
    game = Repository().get_game(game_id)
    return jsonify({'game_id': game.id, 'url': join_url(game.id)})
