"""Inbound socket payloads.

Field names match what clients send on the wire. Answers stay untyped
here; the question variant validates them.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as SchemaError  # noqa: F401

from livequiz.services.games.questions import Quiz


class Payload(BaseModel):
    model_config = ConfigDict(extra='ignore')


class HostJoin(Payload):
    quiz: Optional[Quiz] = None
    pin: Optional[str] = Field(None, pattern=r'^\d{6}$')
    gameId: Optional[str] = None
    lateJoin: Optional[bool] = None

    @model_validator(mode='after')
    def _quiz_or_reclaim(self):
        if self.quiz is None and not (self.pin and self.gameId):
            raise ValueError('host-join needs a quiz, or a pin and gameId to reclaim a game')
        return self


class PlayerJoin(Payload):
    pin: str = Field(pattern=r'^\d{6}$')
    # Name rules live in registry.clean_name
    name: Any = None
    playerId: Optional[str] = None


class ChangeName(Payload):
    newName: Any = None


class SubmitAnswer(Payload):
    answer: Any = None
    questionIndex: Optional[int] = None


class UsePowerUp(Payload):
    type: str


class ProposeAnswer(Payload):
    answer: Any = None


class QuickResponse(Payload):
    type: str
    target: Optional[str] = None
    targetPlayer: Optional[str] = None

    @property
    def target_id(self) -> Optional[str]:
        return self.target or self.targetPlayer


class ChatMessage(Payload):
    text: str = Field(max_length=2000)


class Empty(Payload):
    pass
