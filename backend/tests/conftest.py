import logging
import os
import random
import sys

import pytest

# Ensure the backend root (containing the `livequiz` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Config
from livequiz import create_app, socketio
from livequiz.services.games.clock import ManualClock
from livequiz.services.games.engine import GameEngine


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    CORS_ORIGINS = '*'
    # Deltas go out immediately unless a test turns coalescing on
    BROADCAST_COALESCE_MS = 0


def config_dict(**overrides):
    values = {k: getattr(TestConfig, k) for k in dir(TestConfig) if k.isupper()}
    values.update(overrides)
    return values


def mc_question(text='2+2?', options=('3', '4', '5', '6'), correct=1, time_limit=10, **extra):
    return {
        'type': 'multiple-choice',
        'question': text,
        'options': list(options),
        'correctIndex': correct,
        'timeLimit': time_limit,
        **extra,
    }


def make_quiz(*questions, title='Arithmetic', **settings):
    return {
        'title': title,
        'questions': list(questions) or [mc_question()],
        'settings': settings,
    }


class RecordingTransport:
    """Stands in for the socket server; keeps every frame per connection."""

    def __init__(self):
        self.frames = []
        self.disconnected = []

    def emit(self, event, payload, to):
        self.frames.append((to, event, payload))

    def disconnect(self, conn):
        self.disconnected.append(conn)

    def events(self, conn, name=None):
        return [(e, p) for c, e, p in self.frames if c == conn and (name is None or e == name)]

    def payloads(self, conn, name):
        return [p for e, p in self.events(conn, name)]

    def last(self, conn, name):
        found = self.payloads(conn, name)
        assert found, f"{conn} never received {name}; got {[e for e, _ in self.events(conn)]}"
        return found[-1]

    def names(self, conn):
        return [e for e, _ in self.events(conn)]

    def clear(self):
        self.frames.clear()


class Driver:
    """Drives a GameEngine the way the socket layer would."""

    def __init__(self, engine, transport, clock):
        self.engine = engine
        self.transport = transport
        self.clock = clock
        self.conns = set()

    def connect(self, conn):
        assert self.engine.on_connect(conn)
        self.conns.add(conn)
        return conn

    def send(self, conn, event, data=None):
        self.engine.on_event(conn, event, data)

    def host(self, quiz, conn='host', **extra):
        self.connect(conn)
        self.send(conn, 'host-join', {'quiz': quiz, **extra})
        return self.transport.last(conn, 'game-created')['pin']

    def join(self, pin, name, conn=None, player_id=None):
        conn = conn or f'conn-{name.lower()}'
        if conn not in self.conns:
            self.connect(conn)
        data = {'pin': pin, 'name': name}
        if player_id:
            data['playerId'] = player_id
        self.send(conn, 'player-join', data)
        return self.transport.last(conn, 'join-ack')['playerId']

    def drop(self, conn):
        self.engine.on_disconnect(conn)

    def advance(self, seconds):
        self.clock.advance(seconds)
        return self.engine.timers.run_due()

    def game(self, pin):
        return self.engine.store.get(pin)


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def transport():
    return RecordingTransport()


@pytest.fixture()
def logger():
    return logging.getLogger('livequiz.tests')


@pytest.fixture()
def make_engine(clock, transport, logger):
    def factory(**overrides):
        return GameEngine(config_dict(**overrides), transport, logger, clock=clock, rng=random.Random(7))
    return factory


@pytest.fixture()
def engine(make_engine):
    return make_engine()


@pytest.fixture()
def driver(engine, transport, clock):
    return Driver(engine, transport, clock)


@pytest.fixture()
def make_driver(make_engine, transport, clock):
    def factory(**overrides):
        return Driver(make_engine(**overrides), transport, clock)
    return factory


@pytest.fixture()
def flask_app(clock):
    application = create_app(TestConfig, clock=clock, rng=random.Random(11))
    with application.app_context():
        yield application


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_factory(flask_app):
    clients = []

    def factory():
        test_client = socketio.test_client(flask_app, flask_test_client=flask_app.test_client())
        clients.append(test_client)
        return test_client

    yield factory
    for test_client in clients:
        try:
            if test_client.is_connected():
                test_client.disconnect()
        except Exception:
            pass


@pytest.fixture()
def sio_client(sio_factory):
    return sio_factory()
