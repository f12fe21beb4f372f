import random
import threading
from typing import Callable, Dict, List, Optional

from livequiz.models import Game
from .errors import ResourceExhaustedError

PIN_DIGITS = 6
PIN_ATTEMPTS = 32


class SessionStore:
    """Live games keyed by PIN.

    Allocation is an atomic check-and-insert under the store lock, so two
    hosts can never be handed the same PIN. The lock is never held while a
    game lock is taken.
    """

    def __init__(self, clock, timers, dispatcher, registry, logger,
                 max_games: int = 100, rng: Optional[random.Random] = None):
        self.clock = clock
        self.timers = timers
        self.dispatcher = dispatcher
        self.registry = registry
        self.logger = logger
        self.max_games = max_games
        self.rng = rng or random.SystemRandom()
        self._games: Dict[str, Game] = {}
        self._hosts: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _candidate(self) -> str:
        return '%0*d' % (PIN_DIGITS, self.rng.randrange(10 ** PIN_DIGITS))

    def create(self, host_conn: str, quiz, late_join: bool = False) -> Game:
        now = self.clock.now()
        with self._lock:
            if len(self._games) >= self.max_games:
                raise ResourceExhaustedError('Too many live games, try again later', 'too_many_games')
            for _ in range(PIN_ATTEMPTS):
                pin = self._candidate()
                if pin not in self._games:
                    break
            else:
                raise ResourceExhaustedError('Could not allocate a game PIN', 'pin_exhausted')
            game = Game(pin=pin, host_conn=host_conn, quiz=quiz, created_at=now,
                        late_join=late_join, last_activity_at=now)
            self._games[pin] = game
            self._hosts[host_conn] = pin
        self.logger.info(f"[create] game={pin} host={host_conn} questions={game.question_count} mode={game.mode.value}")
        return game

    def get(self, pin) -> Optional[Game]:
        if not isinstance(pin, str):
            return None
        with self._lock:
            return self._games.get(pin)

    def find_by_host(self, conn_id: str) -> Optional[Game]:
        with self._lock:
            pin = self._hosts.get(conn_id)
            return self._games.get(pin) if pin else None

    def set_host(self, pin: str, conn_id: str) -> None:
        with self._lock:
            for conn, p in list(self._hosts.items()):
                if p == pin:
                    del self._hosts[conn]
            self._hosts[conn_id] = pin

    def all_games(self) -> List[Game]:
        with self._lock:
            return list(self._games.values())

    def count(self) -> int:
        with self._lock:
            return len(self._games)

    def delete(self, pin: str) -> Optional[Game]:
        """Remove a game; callers hold its lock (or it is unreachable)."""
        with self._lock:
            game = self._games.pop(pin, None)
            if game is None:
                return None
            for conn, p in list(self._hosts.items()):
                if p == pin:
                    del self._hosts[conn]
        game.closed = True
        self.timers.cancel_matching(lambda key: isinstance(key, tuple) and key and key[0] == pin)
        self.dispatcher.close_room(pin)
        self.registry.unbind_game(pin)
        game.players.clear()
        game.rounds.clear()
        self.logger.info(f"[delete] game={pin}")
        return game

    def reap(self, grace_sec: float, idle_sec: float, max_age_sec: float,
             on_reap: Callable[[Game, str], None]) -> List[str]:
        """Tear down orphaned games.

        A game is reaped when its host has been gone longer than the grace
        window, when it has had no connected members for ``idle_sec``, or when
        it is older than ``max_age_sec``. Games whose lock is busy are skipped
        until the next pass.
        """
        now = self.clock.now()
        reaped = []
        for game in self.all_games():
            if not game.lock.acquire(blocking=False):
                continue
            try:
                if game.closed:
                    continue
                reason = None
                if game.host_disconnected_at is not None and now - game.host_disconnected_at >= grace_sec:
                    reason = 'host_expired'
                elif game.member_count() == 0 and now - game.last_activity_at >= idle_sec:
                    reason = 'idle'
                elif now - game.created_at >= max_age_sec:
                    reason = 'expired'
                if reason is None:
                    continue
                self.logger.info(f"[reap] game={game.pin} reason={reason}")
                on_reap(game, reason)
                reaped.append(game.pin)
            finally:
                game.lock.release()
        return reaped
