import enum
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from livequiz.services.games.questions import Quiz
from livequiz.services.games.scoring import leaderboard

GROUP_PLAYER_ID = '__group__'


def new_id() -> str:
    return uuid.uuid4().hex


class GameState(str, enum.Enum):
    LOBBY = 'lobby'
    QUESTION_ACTIVE = 'question_active'
    QUESTION_REVIEW = 'question_review'
    FINISHED = 'finished'


class GameMode(str, enum.Enum):
    CLASSIC = 'classic'
    CONSENSUS = 'consensus'


@dataclass
class PowerUpState:
    available: bool = True
    used: bool = False
    active: bool = False

    def to_dict(self):
        return {'available': self.available, 'used': self.used, 'active': self.active}


@dataclass(frozen=True)
class AnswerRecord:
    """One answer per (player, question); never modified after it is stored."""
    player_id: str
    question_index: int
    raw_answer: Any
    submitted_at: float
    elapsed_ms: int
    is_correct: bool
    points_awarded: int
    seq: int = 0

    def to_dict(self):
        return {
            'playerId': self.player_id,
            'questionIndex': self.question_index,
            'answer': list(self.raw_answer) if isinstance(self.raw_answer, tuple) else self.raw_answer,
            'elapsedMs': self.elapsed_ms,
            'isCorrect': self.is_correct,
            'points': self.points_awarded,
        }


@dataclass
class Player:
    name: str
    conn_id: Optional[str]
    game_pin: str
    joined_at: float
    join_seq: int
    id: str = field(default_factory=new_id)
    score: int = 0
    streak: int = 0
    power_ups: Dict[str, PowerUpState] = field(default_factory=dict)
    last_answer_index: int = -1
    disconnected_at: Optional[float] = None
    correct_elapsed_ms: int = 0

    @property
    def connected(self) -> bool:
        return self.disconnected_at is None

    def reset_for_rematch(self, power_ups: Dict[str, PowerUpState]) -> None:
        self.score = 0
        self.streak = 0
        self.power_ups = power_ups
        self.last_answer_index = -1
        self.correct_elapsed_ms = 0

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'score': self.score,
            'streak': self.streak,
            'connected': self.connected,
            'powerUps': {k: v.to_dict() for k, v in self.power_ups.items()},
        }


@dataclass
class ConsensusProposal:
    player_id: str
    answer: Any
    proposed_at: float
    seq: int


@dataclass
class ConsensusRound:
    proposals: Dict[str, ConsensusProposal] = field(default_factory=dict)
    locked: bool = False
    locked_answer: Any = None
    threshold_met: bool = False

    def tally(self) -> Dict[Any, int]:
        counts: Dict[Any, int] = {}
        for p in self.proposals.values():
            counts[p.answer] = counts.get(p.answer, 0) + 1
        return counts


@dataclass
class QuestionRound:
    """Transient state for the question at ``index``."""
    index: int
    started_at: float
    deadline_at: float
    deadline_wall_ms: int
    eligible: Set[str]
    answers: Dict[str, AnswerRecord] = field(default_factory=dict)
    intake_seq: int = 0
    # Extra scoring window per player from extend-time, in ms
    extensions: Dict[str, int] = field(default_factory=dict)
    consensus: Optional[ConsensusRound] = None
    result: Optional[dict] = None

    @property
    def answered_count(self) -> int:
        return len(self.answers)


@dataclass
class Game:
    pin: str
    host_conn: Optional[str]
    quiz: Quiz
    created_at: float
    late_join: bool = False
    id: str = field(default_factory=new_id)
    state: GameState = GameState.LOBBY
    current_index: int = -1
    players: Dict[str, Player] = field(default_factory=dict)
    rounds: Dict[int, QuestionRound] = field(default_factory=dict)
    last_activity_at: float = 0.0
    host_disconnected_at: Optional[float] = None
    # Set while the host-disconnect pause policy holds the running timer.
    paused_at: Optional[float] = None
    paused_remaining: Optional[float] = None
    team_score: int = 0
    closed: bool = False
    join_counter: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def mode(self) -> GameMode:
        return GameMode(self.quiz.settings.mode)

    @property
    def title(self) -> str:
        return self.quiz.title

    @property
    def question_count(self) -> int:
        return len(self.quiz.questions)

    @property
    def room(self) -> str:
        return f"game-{self.pin}"

    @property
    def current_round(self) -> Optional[QuestionRound]:
        return self.rounds.get(self.current_index)

    @property
    def paused(self) -> bool:
        return self.paused_at is not None

    @property
    def current_question(self):
        if 0 <= self.current_index < self.question_count:
            return self.quiz.questions[self.current_index]
        return None

    def connected_players(self) -> List[Player]:
        return [p for p in self.players.values() if p.connected]

    def find_player_by_name(self, name: str) -> Optional[Player]:
        folded = name.casefold()
        for p in self.players.values():
            if p.name.casefold() == folded:
                return p
        return None

    def touch(self, now: float) -> None:
        self.last_activity_at = now

    def member_count(self) -> int:
        host = 1 if self.host_conn and self.host_disconnected_at is None else 0
        return host + len(self.connected_players())

    def player_list(self) -> List[dict]:
        return [{'id': p.id, 'name': p.name} for p in self.players.values()]

    def leaderboard(self) -> List[dict]:
        return leaderboard(self.players.values())

    def summary(self) -> dict:
        return {
            'pin': self.pin,
            'title': self.title,
            'state': self.state.value,
            'mode': self.mode.value,
            'questionCount': self.question_count,
            'currentIndex': self.current_index,
            'players': len(self.players),
        }

    def to_dict(self):
        return {
            **self.summary(),
            'gameId': self.id,
            'players': [p.to_dict() for p in self.players.values()],
            'leaderboard': self.leaderboard(),
            'teamScore': self.team_score,
        }
