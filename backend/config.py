import json
import os


def _flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


DEFAULT_RATE_LIMITS = {
    'host-join': 5,
    'start-game': 3,
    'next-question': 5,
    'rematch-game': 3,
    'player-join': 5,
    'player-change-name': 5,
    'leave-game': 5,
    'submit-answer': 3,
    'use-power-up': 3,
    'propose-answer': 5,
    'send-quick-response': 10,
    'send-chat-message': 5,
    'lock-consensus': 3,
}


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    HOST = os.environ.get('HOST', '0.0.0.0')
    PORT = int(os.environ.get('PORT', '3000'))
    CORS_ORIGINS = [o.strip() for o in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000'
    ).split(',') if o.strip()]
    # Capacity
    MAX_PLAYERS_PER_GAME = int(os.environ.get('MAX_PLAYERS_PER_GAME', '100'))
    MAX_CONCURRENT_GAMES = int(os.environ.get('MAX_CONCURRENT_GAMES', '100'))
    # Question flow (seconds)
    REVIEW_TIMEOUT_SEC = float(os.environ.get('REVIEW_TIMEOUT_SEC', '5'))
    REVIEW_AUTO_ADVANCE = _flag('REVIEW_AUTO_ADVANCE', True)
    # Joining and disconnects
    LATE_JOIN = _flag('LATE_JOIN', False)
    DISCONNECT_GRACE_SEC = float(os.environ.get('DISCONNECT_GRACE_SEC', '20'))
    # 'teardown' or 'pause'
    HOST_DISCONNECT_POLICY = os.environ.get('HOST_DISCONNECT_POLICY', 'teardown')
    # 'shared' gives every connected player the group points, 'group' only grows the team score
    CONSENSUS_SCORING = os.environ.get('CONSENSUS_SCORING', 'shared')
    # Orphan reaper
    ORPHAN_IDLE_SEC = float(os.environ.get('ORPHAN_IDLE_SEC', '600'))
    MAX_GAME_AGE_SEC = float(os.environ.get('MAX_GAME_AGE_SEC', '7200'))
    REAPER_INTERVAL_SEC = float(os.environ.get('REAPER_INTERVAL_SEC', '60'))
    # Per-event steady-state rates (events per second)
    RATE_LIMITS = {**DEFAULT_RATE_LIMITS, **json.loads(os.environ.get('RATE_LIMITS', '{}'))}
    DEFAULT_RATE_LIMIT = int(os.environ.get('DEFAULT_RATE_LIMIT', '10'))
    # Broadcast
    BROADCAST_COALESCE_MS = int(os.environ.get('BROADCAST_COALESCE_MS', '20'))
    OUTBOUND_QUEUE_LIMIT = int(os.environ.get('OUTBOUND_QUEUE_LIMIT', '256'))
    # Timer worker resolution and drain deadline
    TIMER_TICK_SEC = float(os.environ.get('TIMER_TICK_SEC', '0.05'))
    SHUTDOWN_TIMEOUT_SEC = float(os.environ.get('SHUTDOWN_TIMEOUT_SEC', '10'))
