"""Player registry: who is behind each connection.

The registry keeps weak lookups from connection id to (pin, role, player id).
Game objects own their players; the registry only points at them. Its own
lock is a leaf: it is taken inside game locks but never the other way round.
"""

import threading
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional

from livequiz.models import GameState, Player
from .errors import AuthorizationError, ResourceExhaustedError, StateError, ValidationError
from .power_ups import initial_inventory

HOST = 'host'
PLAYER = 'player'

MAX_NAME_LENGTH = 24
RESERVED_NAMES = frozenset({'host'})


@dataclass(frozen=True)
class Binding:
    pin: str
    role: str
    player_id: Optional[str] = None


def clean_name(name) -> str:
    """Trim and check a display name; raises ``ValidationError``."""
    if not isinstance(name, str):
        raise ValidationError('Name is required', 'invalid_name')
    cleaned = name.strip()
    if not 1 <= len(cleaned) <= MAX_NAME_LENGTH:
        raise ValidationError(f'Name must be 1-{MAX_NAME_LENGTH} characters', 'invalid_name')
    if any(unicodedata.category(ch) in ('Cc', 'Cf') for ch in cleaned):
        raise ValidationError('Name contains control characters', 'invalid_name')
    return cleaned


def grace_key(pin: str, player_id: str):
    return (pin, 'grace', player_id)


def host_grace_key(pin: str):
    return (pin, 'host-grace')


class PlayerRegistry:
    def __init__(self, clock, timers, dispatcher, logger, max_players: int = 100,
                 grace_sec: float = 20.0, pause_on_host_disconnect: bool = False):
        self.clock = clock
        self.timers = timers
        self.dispatcher = dispatcher
        self.logger = logger
        self.max_players = max_players
        self.grace_sec = grace_sec
        self.pause_on_host_disconnect = pause_on_host_disconnect
        self.store = None
        self.lifecycle = None
        self._bindings: Dict[str, Binding] = {}
        self._lock = threading.Lock()

    def bind_services(self, store, lifecycle) -> None:
        self.store = store
        self.lifecycle = lifecycle

    # ---- lookups ----

    def lookup(self, conn: str) -> Optional[Binding]:
        with self._lock:
            return self._bindings.get(conn)

    def bind_host(self, conn: str, pin: str) -> None:
        with self._lock:
            self._bindings[conn] = Binding(pin, HOST)

    def bind_player(self, conn: str, pin: str, player_id: str) -> None:
        with self._lock:
            self._bindings[conn] = Binding(pin, PLAYER, player_id)

    def unbind(self, conn: str) -> Optional[Binding]:
        with self._lock:
            return self._bindings.pop(conn, None)

    def unbind_game(self, pin: str) -> List[str]:
        with self._lock:
            conns = [c for c, b in self._bindings.items() if b.pin == pin]
            for c in conns:
                del self._bindings[c]
        return conns

    def count(self) -> int:
        with self._lock:
            return len(self._bindings)

    # ---- operations ----

    def join(self, conn: str, pin: str, name: str, player_id: Optional[str] = None) -> Player:
        if self.lookup(conn) is not None:
            raise StateError('Already in a game', 'already_joined')
        game = self.store.get(pin)
        if game is None:
            raise ValidationError('Game not found', 'game_not_found')
        with game.lock:
            if game.closed:
                raise ValidationError('Game not found', 'game_not_found')
            if player_id and player_id in game.players:
                return self._rejoin(conn, game, game.players[player_id])
            if game.state == GameState.FINISHED:
                raise StateError('Game already finished', 'join_closed')
            if game.state != GameState.LOBBY and not game.late_join:
                raise StateError('Game already started', 'join_closed')
            if len(game.players) >= self.max_players:
                raise ResourceExhaustedError('Game is full', 'game_full')
            cleaned = clean_name(name)
            if cleaned.casefold() in RESERVED_NAMES or game.find_player_by_name(cleaned):
                raise ValidationError('Name is already taken', 'name_taken')

            now = self.clock.now()
            game.join_counter += 1
            player = Player(
                name=cleaned,
                conn_id=conn,
                game_pin=game.pin,
                joined_at=now,
                join_seq=game.join_counter,
                power_ups=initial_inventory(game.quiz.settings.power_ups),
            )
            game.players[player.id] = player
            game.touch(now)
            self.bind_player(conn, game.pin, player.id)
            self.dispatcher.join(game.pin, conn)
            self.dispatcher.send_to_conn(conn, 'join-ack', self._join_ack(game, player))
            self.dispatcher.send_to_room(game.pin, 'player-joined', {
                'id': player.id, 'name': player.name, 'total': len(game.players),
            })
            self.lifecycle.send_current_question(game, conn)
            self.logger.info(f"[join] game={game.pin} player={player.id} name={player.name!r} total={len(game.players)}")
            return player

    def _rejoin(self, conn: str, game, player: Player) -> Player:
        if player.connected:
            raise StateError('Player is already connected', 'already_connected')
        self.timers.cancel(grace_key(game.pin, player.id))
        player.conn_id = conn
        player.disconnected_at = None
        now = self.clock.now()
        game.touch(now)
        self.bind_player(conn, game.pin, player.id)
        self.dispatcher.join(game.pin, conn)
        self.dispatcher.send_to_conn(conn, 'join-ack', self._join_ack(game, player))
        self.dispatcher.send_to_room(game.pin, 'player-joined', {
            'id': player.id, 'name': player.name, 'total': len(game.players), 'rejoined': True,
        })
        self.lifecycle.send_current_question(game, conn)
        self.logger.info(f"[rejoin] game={game.pin} player={player.id} score={player.score}")
        return player

    def _join_ack(self, game, player: Player) -> dict:
        return {
            'playerId': player.id,
            'pin': game.pin,
            'name': player.name,
            'title': game.title,
            'state': game.state.value,
            'mode': game.mode.value,
            'questionCount': game.question_count,
            'score': player.score,
            'players': game.player_list(),
            'powerUps': {k: v.to_dict() for k, v in player.power_ups.items()},
        }

    def change_name(self, conn: str, new_name: str) -> Player:
        game, player = self._player_context(conn)
        with game.lock:
            if game.closed or player.id not in game.players:
                raise AuthorizationError('Player session not found', 'error_session_not_found')
            if game.state != GameState.LOBBY:
                raise StateError('Names can only change in the lobby', 'name_change_closed')
            cleaned = clean_name(new_name)
            other = game.find_player_by_name(cleaned)
            if cleaned.casefold() in RESERVED_NAMES or (other is not None and other.id != player.id):
                raise ValidationError('Name is already taken', 'name_taken')
            old = player.name
            player.name = cleaned
            game.touch(self.clock.now())
            self.dispatcher.send_to_room(game.pin, 'player-name-changed', {
                'id': player.id, 'oldName': old, 'name': cleaned,
            })
            return player

    def leave(self, conn: str) -> None:
        binding = self.lookup(conn)
        if binding is None:
            raise AuthorizationError('Not in a game', 'not_in_game')
        game = self.store.get(binding.pin)
        if game is None:
            self.unbind(conn)
            return
        with game.lock:
            if game.closed:
                return
            if binding.role == HOST:
                self.logger.info(f"[leave] game={game.pin} host left")
                self.lifecycle.teardown(game, 'host_left')
                return
            self.unbind(conn)
            self.dispatcher.send_to_conn(conn, 'left', {'pin': game.pin})
            self.dispatcher.leave(game.pin, conn)
            self._remove_player(game, binding.player_id, 'left')

    def disconnect(self, conn: str) -> None:
        """Transport closed: start the grace window for the player or host."""
        binding = self.unbind(conn)
        if binding is None:
            return
        game = self.store.get(binding.pin)
        if game is None:
            return
        with game.lock:
            if game.closed:
                return
            now = self.clock.now()
            if binding.role == HOST:
                if game.host_conn != conn:
                    return
                game.host_disconnected_at = now
                self.timers.schedule(host_grace_key(game.pin), self.grace_sec,
                                     lambda: self._on_host_grace(game.pin))
                self.dispatcher.send_to_room(game.pin, 'host-disconnected', {'graceSec': self.grace_sec})
                if self.pause_on_host_disconnect:
                    self.lifecycle.pause(game)
                self.logger.info(f"[disconnect] game={game.pin} host grace={self.grace_sec}s")
                return
            player = game.players.get(binding.player_id)
            if player is None or player.conn_id != conn:
                return
            player.disconnected_at = now
            player.conn_id = None
            self.timers.schedule(grace_key(game.pin, player.id), self.grace_sec,
                                 lambda: self._on_player_grace(game.pin, player.id))
            self.dispatcher.send_to_room(game.pin, 'player-disconnected', {'id': player.id, 'name': player.name})
            self.logger.info(f"[disconnect] game={game.pin} player={player.id} grace={self.grace_sec}s")
            self.lifecycle.on_roster_change(game)

    def reclaim_host(self, conn: str, pin: str, game_id: str):
        if self.lookup(conn) is not None:
            raise StateError('Already in a game', 'already_joined')
        game = self.store.get(pin)
        if game is None:
            raise ValidationError('Game not found', 'game_not_found')
        with game.lock:
            if game.closed:
                raise ValidationError('Game not found', 'game_not_found')
            if game.id != game_id:
                raise AuthorizationError('Not the host of this game', 'not_host')
            if game.host_disconnected_at is None:
                raise StateError('Host is still connected', 'host_active')
            self.timers.cancel(host_grace_key(pin))
            game.host_conn = conn
            game.host_disconnected_at = None
            game.touch(self.clock.now())
            self.store.set_host(pin, conn)
            self.bind_host(conn, pin)
            self.dispatcher.join(pin, conn)
            self.dispatcher.send_to_conn(conn, 'host-rejoined', {
                'pin': pin,
                'gameId': game.id,
                'title': game.title,
                'state': game.state.value,
                'currentIndex': game.current_index,
                'players': game.player_list(),
                'leaderboard': game.leaderboard(),
            })
            self.dispatcher.send_to_room(pin, 'host-reconnected', {}, exclude=conn)
            if game.paused:
                self.lifecycle.resume(game)
            self.logger.info(f"[reclaim] game={pin} host conn={conn}")
            return game

    # ---- grace expiry ----

    def _on_player_grace(self, pin: str, player_id: str) -> None:
        game = self.store.get(pin)
        if game is None:
            return
        with game.lock:
            player = game.players.get(player_id)
            if game.closed or player is None or player.connected:
                return
            self._remove_player(game, player_id, 'grace_expired')
        self.dispatcher.flush()

    def _on_host_grace(self, pin: str) -> None:
        game = self.store.get(pin)
        if game is None:
            return
        with game.lock:
            if game.closed or game.host_disconnected_at is None:
                return
            self.logger.info(f"[host-grace] game={pin} expired state={game.state.value}")
            self.lifecycle.teardown(game, 'host_disconnected')
        self.dispatcher.flush()

    def _remove_player(self, game, player_id: str, reason: str) -> None:
        player = game.players.pop(player_id, None)
        if player is None:
            return
        self.timers.cancel(grace_key(game.pin, player_id))
        game.touch(self.clock.now())
        self.dispatcher.send_to_room(game.pin, 'player-left', {
            'id': player.id, 'name': player.name, 'total': len(game.players),
        })
        self.logger.info(f"[remove] game={game.pin} player={player.id} reason={reason}")
        self.lifecycle.on_roster_change(game)

    def _player_context(self, conn: str):
        binding = self.lookup(conn)
        if binding is None or binding.role != PLAYER:
            raise AuthorizationError('Player session not found', 'error_session_not_found')
        game = self.store.get(binding.pin)
        player = game.players.get(binding.player_id) if game else None
        if game is None or player is None:
            raise AuthorizationError('Player session not found', 'error_session_not_found')
        return game, player

    def drop_stale_players(self, game) -> List[str]:
        """Remove disconnected players; used when a finished game is reset."""
        gone = [p.id for p in game.players.values() if not p.connected]
        for pid in gone:
            game.players.pop(pid, None)
            self.timers.cancel(grace_key(game.pin, pid))
        return gone
