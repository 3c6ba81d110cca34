from typing import Any, Dict, List, Optional

from flask import current_app, request
from flask_socketio import emit, join_room, leave_room

from quizlive import feed, socketio
from quizlive.errors import QuizLiveError, ValidationError
from quizlive.repository import Repository

NAMESPACE = '/ws'

# sid -> feed subscription handles opened by that socket
_sid_subscriptions: Dict[str, List[int]] = {}
# sid -> {'game_id': ..., 'is_host': ...} for sockets present in a game room
_sid_to_ctx: Dict[str, Dict[str, Any]] = {}


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _payload(data) -> Dict[str, Any]:
    return data if isinstance(data, dict) else {}


def _room(game_id: int) -> str:
    return f"game:{game_id}"


def _presence(game_id: int) -> Dict[str, Any]:
    members = [ctx for ctx in _sid_to_ctx.values() if ctx['game_id'] == game_id]
    hosts = sum(1 for ctx in members if ctx['is_host'])
    return {'game_id': game_id, 'hosts': hosts, 'players': len(members) - hosts}


def _broadcast_presence(game_id: int, namespace: str) -> None:
    socketio.emit('presence', _presence(game_id), to=_room(game_id), namespace=namespace)


def _leave_current(sid: str, namespace: str) -> Optional[int]:
    ctx = _sid_to_ctx.pop(sid, None)
    if ctx is None:
        return None
    leave_room(_room(ctx['game_id']), sid=sid, namespace=namespace)
    _broadcast_presence(ctx['game_id'], namespace)
    return ctx['game_id']


def _forwarder(sid: str, namespace: str):
    def forward(change):
        payload = change.to_dict()
        payload['handle'] = forward.handle
        socketio.emit('row_change', payload, to=sid, namespace=namespace)
    forward.handle = None
    return forward


def _drop_subscriptions(sid: str) -> int:
    handles = _sid_subscriptions.pop(sid, [])
    for handle in handles:
        feed.unsubscribe(handle)
    return len(handles)


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(*args):
    sid = _get_sid()
    dropped = _drop_subscriptions(sid)
    _leave_current(sid, request.namespace)
    if dropped:
        current_app.logger.info(f"[ws] sid={sid} disconnected, dropped {dropped} subscription(s)")


def handle_subscribe(data):
    """Open a feed subscription for this socket.

    ``{'table': 'games', 'events': ['UPDATE'], 'filter': 'id=eq.5'}``;
    matching rows are pushed as ``row_change`` until unsubscribe/disconnect.
    """
    data = _payload(data)
    table = data.get('table')
    if not table:
        emit('error', {'message': 'table is required'})
        return
    sid = _get_sid()
    forward = _forwarder(sid, request.namespace)
    try:
        sub = feed.subscribe(table, data.get('events') or data.get('event') or '*', data.get('filter'), forward)
    except ValidationError as exc:
        emit('error', {'message': exc.message})
        return
    forward.handle = sub.handle
    _sid_subscriptions.setdefault(sid, []).append(sub.handle)
    emit('subscribed', {'handle': sub.handle, 'table': table, 'filter': data.get('filter')})


def handle_unsubscribe(data):
    handle = _payload(data).get('handle')
    sid = _get_sid()
    owned = _sid_subscriptions.get(sid, [])
    if handle not in owned:
        emit('error', {'message': f'unknown subscription {handle}'})
        return
    owned.remove(handle)
    feed.unsubscribe(handle)
    emit('unsubscribed', {'handle': handle})


def handle_join_game(data):
    """Enter a game's room.

    The joining socket gets ``joined`` with the current game state; everyone
    in the room gets ``presence`` with the host and player socket counts.
    """
    data = _payload(data)
    try:
        game_id = int(data.get('game_id'))
    except (TypeError, ValueError):
        emit('error', {'message': 'game_id is required'})
        return
    try:
        game = Repository().get_game(game_id)
        state = game.to_state()
    except QuizLiveError as exc:
        emit('error', {'message': exc.message})
        return

    sid = _get_sid()
    current = _sid_to_ctx.get(sid)
    if current is not None and current['game_id'] != game_id:
        _leave_current(sid, request.namespace)
    join_room(_room(game_id))
    _sid_to_ctx[sid] = {'game_id': game_id, 'is_host': bool(data.get('is_host'))}
    emit('joined', {'room': _room(game_id), 'state': state})
    _broadcast_presence(game_id, request.namespace)


def handle_leave_game(data):
    sid = _get_sid()
    left = _leave_current(sid, request.namespace)
    if left is None:
        emit('error', {'message': 'not in a game'})
        return
    emit('left', {'room': _room(left)})


def handle_ping(data):
    emit('pong', _payload(data))


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    # Handles and rooms belong to the previous app's sockets
    _sid_subscriptions.clear()
    _sid_to_ctx.clear()
    namespaces = [NAMESPACE, '/'] if testing else [NAMESPACE]
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('subscribe', handle_subscribe, namespace=namespace)
        socketio.on_event('unsubscribe', handle_unsubscribe, namespace=namespace)
        socketio.on_event('join_game', handle_join_game, namespace=namespace)
        socketio.on_event('leave_game', handle_leave_game, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
