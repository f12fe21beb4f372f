import os
import signal
import threading


class GracefulShutdown:
    """Drain live games on SIGINT/SIGTERM, then exit.

    A watchdog forces the exit if the drain has not finished within
    ``timeout_sec``.
    """

    def __init__(self, engine, logger, timeout_sec: float = 10.0, exit_func=os._exit):
        self.engine = engine
        self.logger = logger
        self.timeout_sec = timeout_sec
        self.exit_func = exit_func
        self._started = threading.Event()

    def install(self) -> None:
        signal.signal(signal.SIGINT, self._on_signal)
        signal.signal(signal.SIGTERM, self._on_signal)

    def _on_signal(self, signum, frame) -> None:
        self.shutdown(signal.Signals(signum).name)

    def shutdown(self, reason: str = 'shutdown') -> None:
        if self._started.is_set():
            return
        self._started.set()
        self.logger.info(f"[shutdown] reason={reason} timeout={self.timeout_sec}s")
        watchdog = threading.Timer(self.timeout_sec, self._force_exit)
        watchdog.daemon = True
        watchdog.start()
        try:
            ended = self.engine.drain()
            self.logger.info(f"[shutdown] drained games={ended}")
        except Exception:
            self.logger.exception("[shutdown] drain failed")
            self.exit_func(1)
            return
        finally:
            watchdog.cancel()
        self.exit_func(0)

    def _force_exit(self) -> None:
        self.logger.error(f"[shutdown] drain exceeded {self.timeout_sec}s, forcing exit")
        self.exit_func(1)
