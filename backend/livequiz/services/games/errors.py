"""Error taxonomy for the game engine.

Every user-visible failure is a ``GameError`` subclass carrying the message
sent back to the client and a stable ``message_key`` clients can translate.
Mutators raise before changing any state, so catching one of these never
leaves a game half-updated.
"""


class GameError(Exception):
    kind = 'error'

    def __init__(self, message: str, message_key: str = 'error'):
        super().__init__(message)
        self.message = message
        self.message_key = message_key

    def to_payload(self) -> dict:
        return {'message': self.message, 'messageKey': self.message_key}


class ValidationError(GameError):
    kind = 'validation'


class AuthorizationError(GameError):
    kind = 'authorization'


class StateError(GameError):
    kind = 'state'


class ResourceExhaustedError(GameError):
    kind = 'resource'
