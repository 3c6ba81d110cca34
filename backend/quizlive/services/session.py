"""Game session lifecycle: creation and host-driven phase transitions.

A game starts in ``lobby`` and only moves forward: lobby -> quiz -> results.
The caller is assumed to be the host; authorization happens outside.
"""

from flask import current_app

from quizlive.errors import IllegalTransition, ValidationError
from quizlive.models import PHASE_TRANSITIONS, PHASES, phase_rank
from quizlive.repository import Repository


def start_game(quiz_set_id, repo=None):
    """Create a new game for the quiz set, in the lobby phase."""
    repo = repo or Repository()
    game = repo.create_game(quiz_set_id)
    current_app.logger.info(f"[game] created game={game.id} quiz_set={quiz_set_id}")
    return game


def join_url(game_id):
    base = (current_app.config.get('PUBLIC_BASE_URL') or '').rstrip('/')
    return f"{base}/game/{game_id}"


def check_transition(current, target, strict=True):
    """True when ``current -> target`` must be written, False when it is a no-op.

    Moving backwards is always rejected. Strict mode also rejects edges
    missing from the transition table (lobby -> results).
    """
    if target == current:
        return False
    if phase_rank(target) < phase_rank(current):
        raise IllegalTransition(f"Cannot move game from '{current}' back to '{target}'")
    if strict and target not in PHASE_TRANSITIONS.get(current, set()):
        raise IllegalTransition(f"Cannot move game from '{current}' to '{target}'")
    return True


def advance_phase(game_id, target_phase, repo=None):
    """Move a game to ``target_phase`` with a single update of its phase.

    Advancing to the phase the game is already in returns it unchanged.
    Failures propagate untouched and leave the prior phase in place; there
    is no retry.
    """
    if target_phase not in PHASES:
        raise ValidationError(f"Unknown phase '{target_phase}'")
    repo = repo or Repository()
    strict = bool(current_app.config.get('STRICT_PHASE_TRANSITIONS', True))
    outcome = {}

    def guard(game, phase):
        outcome['from'] = game.phase
        outcome['write'] = check_transition(game.phase, phase, strict=strict)
        return outcome['write']

    game = repo.update_game_phase(game_id, target_phase, guard=guard)
    if outcome.get('write'):
        current_app.logger.info(f"[phase] game={game_id} {outcome['from']} -> {target_phase}")
    else:
        current_app.logger.info(f"[phase] game={game_id} already in {target_phase}")
    return game
