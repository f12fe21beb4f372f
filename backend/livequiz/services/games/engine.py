import random
import threading
from typing import Optional

from .answers import AnswerIntake
from .broadcast import BroadcastDispatcher
from .clock import MonotonicClock, TimerService
from .consensus import ConsensusCoordinator
from .lifecycle import GameLifecycle
from .rate_limiter import RateLimiter
from .registry import PlayerRegistry
from .router import EventRouter
from .store import SessionStore

REAPER_KEY = ('engine', 'reaper')


class GameEngine:
    """Wires the game services together for one process.

    ``config`` is a mapping with the keys of ``config.Config`` (a Flask
    ``app.config`` works). ``transport`` needs ``emit(event, payload, to=...)``
    and ``disconnect(conn)``.
    """

    def __init__(self, config, transport, logger, clock=None, rng: Optional[random.Random] = None):
        self.config = config
        self.logger = logger
        self.clock = clock or MonotonicClock()
        self.draining = False
        self._drain_lock = threading.Lock()

        self.timers = TimerService(self.clock, logger, tick_sec=config.get('TIMER_TICK_SEC', 0.05))
        self.dispatcher = BroadcastDispatcher(
            transport,
            self.timers,
            logger,
            coalesce_ms=config.get('BROADCAST_COALESCE_MS', 20),
            queue_limit=config.get('OUTBOUND_QUEUE_LIMIT', 256),
        )
        self.limiter = RateLimiter(
            self.clock,
            config.get('RATE_LIMITS', {}),
            default_rate=config.get('DEFAULT_RATE_LIMIT', 10),
            logger=logger,
        )
        self.registry = PlayerRegistry(
            self.clock,
            self.timers,
            self.dispatcher,
            logger,
            max_players=config.get('MAX_PLAYERS_PER_GAME', 100),
            grace_sec=config.get('DISCONNECT_GRACE_SEC', 20),
            pause_on_host_disconnect=config.get('HOST_DISCONNECT_POLICY', 'teardown') == 'pause',
        )
        self.store = SessionStore(
            self.clock,
            self.timers,
            self.dispatcher,
            self.registry,
            logger,
            max_games=config.get('MAX_CONCURRENT_GAMES', 100),
            rng=rng,
        )
        self.lifecycle = GameLifecycle(
            self.store,
            self.registry,
            self.timers,
            self.dispatcher,
            self.clock,
            logger,
            review_timeout_sec=config.get('REVIEW_TIMEOUT_SEC', 5.0),
            review_auto_advance=config.get('REVIEW_AUTO_ADVANCE', True),
            consensus_scoring=config.get('CONSENSUS_SCORING', 'shared'),
            rng=rng,
        )
        self.answers = AnswerIntake(self.lifecycle, self.clock, self.dispatcher, logger)
        self.consensus = ConsensusCoordinator(self.lifecycle, self.clock, self.dispatcher, logger)
        self.lifecycle.answers = self.answers
        self.lifecycle.consensus = self.consensus
        self.registry.bind_services(self.store, self.lifecycle)
        self.router = EventRouter(self)

    # ---- transport hooks ----

    def on_connect(self, conn: str) -> bool:
        if self.draining:
            return False
        self.dispatcher.connect(conn)
        return True

    def on_event(self, conn: str, event: str, data=None) -> None:
        self.router.handle(conn, event, data)

    def on_disconnect(self, conn: str) -> None:
        try:
            self.registry.disconnect(conn)
        except Exception:
            self.logger.exception(f"[internal-error] event=disconnect conn={conn}")
        finally:
            self.dispatcher.disconnect(conn)
            self.limiter.release(conn)
            self.dispatcher.flush()

    # ---- background work ----

    def start(self, socketio) -> None:
        """Start the timer worker and the periodic orphan reaper."""
        self._schedule_reaper()
        socketio.start_background_task(self.timers.run_forever, socketio.sleep)

    def _schedule_reaper(self) -> None:
        interval = self.config.get('REAPER_INTERVAL_SEC', 60)
        self.timers.schedule(REAPER_KEY, interval, self._reaper_tick)

    def _reaper_tick(self) -> None:
        try:
            self.reap()
        finally:
            if not self.draining:
                self._schedule_reaper()

    def reap(self) -> list:
        reaped = self.store.reap(
            grace_sec=self.config.get('DISCONNECT_GRACE_SEC', 20),
            idle_sec=self.config.get('ORPHAN_IDLE_SEC', 600),
            max_age_sec=self.config.get('MAX_GAME_AGE_SEC', 7200),
            on_reap=self.lifecycle.teardown,
        )
        self.limiter.sweep()
        self.dispatcher.flush()
        return reaped

    def drain(self) -> int:
        """End every live game and flush; new games and joins are refused from here on."""
        with self._drain_lock:
            if self.draining:
                return 0
            self.draining = True
        games = self.store.all_games()
        self.logger.info(f"[drain] games={len(games)}")
        for game in games:
            with game.lock:
                if not game.closed:
                    self.lifecycle.teardown(game, 'shutdown')
        self.timers.cancel_all()
        self.timers.stop()
        self.dispatcher.flush_all()
        return len(games)

    def stats(self) -> dict:
        return {
            'games': self.store.count(),
            'sessions': self.registry.count(),
            'timers': self.timers.pending(),
            'draining': self.draining,
            **self.dispatcher.stats(),
            **self.limiter.stats(),
        }

    def games_summary(self) -> list:
        summaries = []
        for game in self.store.all_games():
            with game.lock:
                if not game.closed:
                    summaries.append(game.summary())
        return summaries
