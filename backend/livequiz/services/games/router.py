"""Inbound event dispatch.

Every event runs the same pipeline: rate limit, schema validation, locate
the game, authorize, mutate under the game's lock, then flush outbound frames
once the lock is released. Failures never escape to the socket layer; they
are turned into an error frame on the event's error channel.
"""

from contextlib import contextmanager

from livequiz import schemas
from livequiz.schemas import SchemaError
from .errors import AuthorizationError, GameError, ResourceExhaustedError, StateError, ValidationError
from .registry import HOST

# Events whose failures are reported on a dedicated channel instead of 'error'.
ERROR_CHANNELS = {
    'submit-answer': 'answer-error',
    'use-power-up': 'power-up-result',
}

SERVER_ERROR = GameError('server error', 'server_error')


def _schema_message(exc: SchemaError) -> str:
    errors = exc.errors()
    if not errors:
        return 'Invalid payload'
    first = errors[0]
    where = '.'.join(str(part) for part in first.get('loc', ()))
    return f"{where}: {first.get('msg')}" if where else first.get('msg', 'Invalid payload')


class EventRouter:
    def __init__(self, engine):
        self.engine = engine
        self.logger = engine.logger
        self.routes = {
            'host-join': (self.host_join, schemas.HostJoin, 'invalid_quiz'),
            'start-game': (self.start_game, schemas.Empty, 'invalid_payload'),
            'next-question': (self.next_question, schemas.Empty, 'invalid_payload'),
            'rematch-game': (self.rematch_game, schemas.Empty, 'invalid_payload'),
            'player-join': (self.player_join, schemas.PlayerJoin, 'invalid_payload'),
            'player-change-name': (self.change_name, schemas.ChangeName, 'invalid_name'),
            'leave-game': (self.leave_game, schemas.Empty, 'invalid_payload'),
            'submit-answer': (self.submit_answer, schemas.SubmitAnswer, 'invalid_answer'),
            'use-power-up': (self.use_power_up, schemas.UsePowerUp, 'invalid_power_up'),
            'propose-answer': (self.propose_answer, schemas.ProposeAnswer, 'invalid_answer'),
            'send-quick-response': (self.quick_response, schemas.QuickResponse, 'invalid_quick_response'),
            'send-chat-message': (self.chat_message, schemas.ChatMessage, 'invalid_message'),
            'lock-consensus': (self.lock_consensus, schemas.Empty, 'invalid_payload'),
        }

    @property
    def events(self):
        return list(self.routes)

    def handle(self, conn: str, event: str, data=None) -> None:
        engine = self.engine
        try:
            route = self.routes.get(event)
            if route is None:
                raise ValidationError(f'Unknown event {event}', 'unknown_event')
            handler, schema, error_key = route
            decision = engine.limiter.check(conn, event)
            if not decision.allowed:
                if decision.notify:
                    raise ResourceExhaustedError('Too many requests, slow down', 'rate_limited')
                return
            handler(conn, self._parse(schema, data, error_key))
        except GameError as exc:
            self.reply_error(conn, event, exc)
        except Exception:
            binding = engine.registry.lookup(conn)
            pin = binding.pin if binding else None
            self.logger.exception(f"[internal-error] game={pin} event={event} conn={conn}")
            self.reply_error(conn, event, SERVER_ERROR)
        finally:
            engine.dispatcher.flush()

    def _parse(self, schema, data, error_key):
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError('Payload must be a JSON object', 'invalid_payload')
        try:
            return schema.model_validate(data)
        except SchemaError as exc:
            raise ValidationError(_schema_message(exc), error_key)

    def reply_error(self, conn: str, event: str, exc: GameError) -> None:
        channel = ERROR_CHANNELS.get(event, 'error')
        payload = exc.to_payload()
        if channel == 'power-up-result':
            payload = {'success': False, **payload}
        elif channel == 'error':
            payload['event'] = event
        self.engine.dispatcher.send_to_conn(conn, channel, payload)

    # ---- context helpers ----

    def _host_game(self, conn: str):
        binding = self.engine.registry.lookup(conn)
        if binding is None:
            raise AuthorizationError('No game session for this connection', 'error_session_not_found')
        if binding.role != HOST:
            raise AuthorizationError('Only the host can do that', 'not_host')
        game = self.engine.store.get(binding.pin)
        if game is None:
            raise AuthorizationError('No game session for this connection', 'error_session_not_found')
        return game

    def _player_game(self, conn: str):
        binding = self.engine.registry.lookup(conn)
        if binding is None:
            raise AuthorizationError('No player session for this connection', 'error_session_not_found')
        if binding.role == HOST:
            raise AuthorizationError('Hosts cannot do that', 'not_player')
        game = self.engine.store.get(binding.pin)
        if game is None:
            raise AuthorizationError('No player session for this connection', 'error_session_not_found')
        return game, binding.player_id

    @contextmanager
    def _serial(self, game):
        with game.lock:
            if game.closed:
                raise ValidationError('Game not found', 'game_not_found')
            yield game

    @contextmanager
    def _as_player(self, conn: str):
        game, player_id = self._player_game(conn)
        with self._serial(game):
            player = game.players.get(player_id)
            if player is None or player.conn_id != conn:
                raise AuthorizationError('No player session for this connection', 'error_session_not_found')
            yield game, player

    def _refuse_while_draining(self) -> None:
        if self.engine.draining:
            raise StateError('Server is shutting down', 'server_shutting_down')

    # ---- host events ----

    def host_join(self, conn: str, payload: schemas.HostJoin) -> None:
        self._refuse_while_draining()
        engine = self.engine
        if payload.quiz is None:
            engine.registry.reclaim_host(conn, payload.pin, payload.gameId)
            return
        binding = engine.registry.lookup(conn)
        if binding is not None and binding.role != HOST:
            raise StateError('Already joined a game as a player', 'already_joined')
        previous = engine.store.find_by_host(conn)
        if previous is not None:
            with previous.lock:
                if not previous.closed:
                    engine.lifecycle.teardown(previous, 'host_started_new_game')
        late_join = payload.lateJoin
        if late_join is None:
            late_join = payload.quiz.settings.late_join
        if late_join is None:
            late_join = engine.config.get('LATE_JOIN', False)
        game = engine.store.create(conn, payload.quiz, late_join=bool(late_join))
        with game.lock:
            engine.registry.bind_host(conn, game.pin)
            engine.dispatcher.join(game.pin, conn)
            engine.dispatcher.send_to_conn(conn, 'game-created', {
                'pin': game.pin,
                'gameId': game.id,
                'title': game.title,
                'questionCount': game.question_count,
                'mode': game.mode.value,
                'lateJoin': game.late_join,
            })
            engine.dispatcher.send_to_idle('game-available', {
                'pin': game.pin,
                'title': game.title,
                'questionCount': game.question_count,
                'created': engine.clock.wall_ms(),
            }, exclude=conn)

    def start_game(self, conn: str, payload) -> None:
        game = self._host_game(conn)
        with self._serial(game):
            self.engine.lifecycle.start(game)

    def next_question(self, conn: str, payload) -> None:
        game = self._host_game(conn)
        with self._serial(game):
            self.engine.lifecycle.next_question(game)

    def rematch_game(self, conn: str, payload) -> None:
        game = self._host_game(conn)
        with self._serial(game):
            self.engine.lifecycle.rematch(game)

    def lock_consensus(self, conn: str, payload) -> None:
        game = self._host_game(conn)
        with self._serial(game):
            self.engine.consensus.host_lock(game)

    # ---- player events ----

    def player_join(self, conn: str, payload: schemas.PlayerJoin) -> None:
        self._refuse_while_draining()
        self.engine.registry.join(conn, payload.pin, payload.name, payload.playerId)

    def change_name(self, conn: str, payload: schemas.ChangeName) -> None:
        self.engine.registry.change_name(conn, payload.newName)

    def leave_game(self, conn: str, payload) -> None:
        self.engine.registry.leave(conn)

    def submit_answer(self, conn: str, payload: schemas.SubmitAnswer) -> None:
        with self._as_player(conn) as (game, player):
            self.engine.answers.submit(game, player, payload.answer, payload.questionIndex)

    def use_power_up(self, conn: str, payload: schemas.UsePowerUp) -> None:
        with self._as_player(conn) as (game, player):
            self.engine.lifecycle.use_power_up(game, player, payload.type)

    def propose_answer(self, conn: str, payload: schemas.ProposeAnswer) -> None:
        with self._as_player(conn) as (game, player):
            self.engine.consensus.propose(game, player, payload.answer)

    def quick_response(self, conn: str, payload: schemas.QuickResponse) -> None:
        with self._as_player(conn) as (game, player):
            self.engine.consensus.quick_response(game, player, payload.type, payload.target_id)

    def chat_message(self, conn: str, payload: schemas.ChatMessage) -> None:
        with self._as_player(conn) as (game, player):
            self.engine.consensus.chat(game, player, payload.text)
