"""Question variants.

A quiz question is a tagged union on ``type``. Each variant knows how to
validate and normalise a raw submitted answer, how to judge a normalised
answer, and what it reveals to clients before and after the question.
Normalised answers are hashable so consensus proposals can be tallied.
"""

import math
import re
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ValidationError

DEFAULT_POINTS = 1000
MIN_TIME_LIMIT = 5
MAX_TIME_LIMIT = 120
DEFAULT_TOLERANCE = 0.01
DEFAULT_CONSENSUS_THRESHOLD = 66

_INDEX = re.compile(r'-?[0-9]+')


def _as_int(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and _INDEX.fullmatch(raw.strip()):
        return int(raw.strip())
    return None


def _invalid(reason: str) -> ValidationError:
    return ValidationError(reason, 'invalid_answer')


class QuestionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', frozen=True)

    question: str = Field(min_length=1)
    time_limit: int = Field(20, ge=MIN_TIME_LIMIT, le=MAX_TIME_LIMIT, alias='timeLimit')
    points_base: int = Field(DEFAULT_POINTS, ge=0, alias='points')
    explanation: Optional[str] = None

    @property
    def time_limit_ms(self) -> int:
        return self.time_limit * 1000

    def public_payload(self) -> dict:
        return {'type': self.type, 'question': self.question}

    def reveal_payload(self) -> dict:
        payload = {'type': self.type, 'correctAnswer': self.correct_answer_payload()}
        if self.explanation:
            payload['explanation'] = self.explanation
        return payload

    def answer_to_json(self, answer: Any) -> Any:
        return list(answer) if isinstance(answer, tuple) else answer


class MultipleChoiceQuestion(QuestionBase):
    type: Literal['multiple-choice'] = 'multiple-choice'
    options: List[str] = Field(min_length=4, max_length=4)
    correct_index: int = Field(ge=0, le=3, alias='correctIndex')

    def normalize_answer(self, raw: Any) -> int:
        value = _as_int(raw)
        if value is None or not 0 <= value < len(self.options):
            raise _invalid('Answer must be an option index')
        return value

    def is_correct(self, answer: int) -> bool:
        return answer == self.correct_index

    def public_payload(self) -> dict:
        return {**super().public_payload(), 'options': list(self.options)}

    def correct_answer_payload(self):
        return self.correct_index


class TrueFalseQuestion(QuestionBase):
    type: Literal['true-false'] = 'true-false'
    correct_answer: str = Field(alias='correctAnswer')

    @field_validator('correct_answer', mode='before')
    @classmethod
    def _token(cls, value):
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
            return value.strip().lower()
        raise ValueError('correctAnswer must be "true" or "false"')

    def normalize_answer(self, raw: Any) -> str:
        if isinstance(raw, bool):
            return 'true' if raw else 'false'
        if isinstance(raw, str) and raw.strip().lower() in ('true', 'false'):
            return raw.strip().lower()
        raise _invalid('Answer must be "true" or "false"')

    def is_correct(self, answer: str) -> bool:
        return answer == self.correct_answer

    def public_payload(self) -> dict:
        return {**super().public_payload(), 'options': ['true', 'false']}

    def correct_answer_payload(self):
        return self.correct_answer


class MultipleCorrectQuestion(QuestionBase):
    type: Literal['multiple-correct'] = 'multiple-correct'
    options: List[str] = Field(min_length=2)
    correct_indices: List[int] = Field(min_length=1, alias='correctIndices')

    @model_validator(mode='after')
    def _indices_in_range(self):
        if any(i < 0 or i >= len(self.options) for i in self.correct_indices):
            raise ValueError('correctIndices out of range')
        return self

    def normalize_answer(self, raw: Any) -> Tuple[int, ...]:
        if not isinstance(raw, (list, tuple)):
            raise _invalid('Answer must be a list of option indices')
        picked = set()
        for item in raw:
            value = _as_int(item)
            if value is None or not 0 <= value < len(self.options):
                raise _invalid('Answer contains an invalid option index')
            picked.add(value)
        return tuple(sorted(picked))

    def is_correct(self, answer: Tuple[int, ...]) -> bool:
        return set(answer) == set(self.correct_indices)

    def public_payload(self) -> dict:
        return {**super().public_payload(), 'options': list(self.options)}

    def correct_answer_payload(self):
        return sorted(set(self.correct_indices))


class NumericQuestion(QuestionBase):
    type: Literal['numeric'] = 'numeric'
    correct_answer: float = Field(alias='correctAnswer')
    tolerance: float = Field(DEFAULT_TOLERANCE, ge=0)

    def normalize_answer(self, raw: Any) -> float:
        if isinstance(raw, bool):
            raise _invalid('Answer must be a number')
        try:
            value = float(raw.strip() if isinstance(raw, str) else raw)
        except (TypeError, ValueError, OverflowError):
            raise _invalid('Answer must be a number')
        if not math.isfinite(value):
            raise _invalid('Answer must be a finite number')
        return value

    def is_correct(self, answer: float) -> bool:
        return abs(answer - self.correct_answer) <= self.tolerance

    def correct_answer_payload(self):
        return {'value': self.correct_answer, 'tolerance': self.tolerance}


class OrderingQuestion(QuestionBase):
    type: Literal['ordering'] = 'ordering'
    items: List[str] = Field(min_length=2)
    correct_order: List[int] = Field(alias='correctOrder')

    @model_validator(mode='after')
    def _is_permutation(self):
        if sorted(self.correct_order) != list(range(len(self.items))):
            raise ValueError('correctOrder must be a permutation of item indices')
        return self

    def normalize_answer(self, raw: Any) -> Tuple[int, ...]:
        if not isinstance(raw, (list, tuple)):
            raise _invalid('Answer must be a list of item indices')
        order = tuple(_as_int(item) for item in raw)
        if None in order or sorted(order) != list(range(len(self.items))):
            raise _invalid('Answer must order every item exactly once')
        return order

    def is_correct(self, answer: Tuple[int, ...]) -> bool:
        return list(answer) == list(self.correct_order)

    def public_payload(self) -> dict:
        return {**super().public_payload(), 'options': list(self.items)}

    def correct_answer_payload(self):
        return list(self.correct_order)


Question = Annotated[
    Union[
        MultipleChoiceQuestion,
        TrueFalseQuestion,
        MultipleCorrectQuestion,
        NumericQuestion,
        OrderingQuestion,
    ],
    Field(discriminator='type'),
]


class QuizSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', frozen=True)

    mode: Literal['classic', 'consensus'] = 'classic'
    late_join: Optional[bool] = Field(None, alias='lateJoin')
    power_ups: bool = Field(False, alias='powerUps')
    allow_chat: bool = Field(False, alias='allowChat')
    # Share of voters (percent) behind the leading answer that counts as a strong consensus
    consensus_threshold: int = Field(DEFAULT_CONSENSUS_THRESHOLD, ge=1, le=100, alias='consensusThreshold')


class Quiz(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', frozen=True)

    title: str = 'Untitled quiz'
    questions: List[Question] = Field(min_length=1)
    settings: QuizSettings = Field(default_factory=QuizSettings)

    @model_validator(mode='before')
    @classmethod
    def _default_type(cls, data):
        # Questions without a type are multiple-choice, as authored quizzes omit it.
        if isinstance(data, dict) and isinstance(data.get('questions'), list):
            questions = []
            for q in data['questions']:
                if isinstance(q, dict) and 'type' not in q:
                    q = {**q, 'type': 'multiple-choice'}
                questions.append(q)
            data = {**data, 'questions': questions}
        return data
