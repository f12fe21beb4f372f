from flask import current_app, request

from livequiz import socketio


class SocketIOTransport:
    """Delivers dispatcher frames through Flask-SocketIO."""

    def __init__(self, sio, namespace: str = '/'):
        self.sio = sio
        self.namespace = namespace

    def emit(self, event: str, payload: dict, to: str) -> None:
        self.sio.emit(event, payload, to=to, namespace=self.namespace)

    def disconnect(self, conn: str) -> None:
        self.sio.server.disconnect(conn, namespace=self.namespace)


def _engine():
    return current_app.extensions['livequiz']


def handle_connect(auth=None):
    engine = _engine()
    if not engine.on_connect(request.sid):
        current_app.logger.info(f"[connect-refused] conn={request.sid} draining")
        return False
    socketio.emit('connected', {'id': request.sid}, to=request.sid)


def handle_disconnect(*args):
    _engine().on_disconnect(request.sid)


def _make_handler(event: str):
    def handler(data=None):
        _engine().on_event(request.sid, event, data)
    handler.__name__ = 'handle_' + event.replace('-', '_')
    return handler


def register_socketio_handlers(engine, namespace: str = '/') -> None:
    """Register the connect/disconnect hooks and one handler per game event."""
    socketio.on_event('connect', handle_connect, namespace=namespace)
    socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
    for event in engine.router.events:
        socketio.on_event(event, _make_handler(event), namespace=namespace)
