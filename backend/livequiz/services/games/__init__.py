"""Game session engine: timers, rate limiting, players, games and broadcast.

Nothing in this package imports Flask. The socket layer hands events to
``engine.GameEngine`` and receives frames back through a transport object,
so the state machine can be driven directly in tests.
"""
