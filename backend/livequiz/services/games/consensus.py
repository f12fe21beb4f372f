"""Consensus mode: players discuss and converge on one group answer.

Each eligible player holds at most one live proposal per question; a newer
proposal replaces the older one. When every connected eligible player holds
the same proposal the group answer locks on its own. The host can lock at
any time, which takes the plurality (ties go to the proposal made first).
"""

import re
from typing import Optional

from livequiz.models import GROUP_PLAYER_ID, AnswerRecord, ConsensusProposal, GameMode, GameState
from .broadcast import CHATTER
from .errors import StateError, ValidationError
from .scoring import time_weighted_points

QUICK_RESPONSES = ('agree', 'disagree', 'unsure', 'thumbs-up')
MAX_CHAT_LENGTH = 200

_ANGLE_BRACKETS = re.compile(r'[<>]')


def sanitize_chat(text) -> str:
    if not isinstance(text, str):
        return ''
    return _ANGLE_BRACKETS.sub('', text.strip())[:MAX_CHAT_LENGTH].strip()


class ConsensusCoordinator:
    def __init__(self, lifecycle, clock, dispatcher, logger):
        self.lifecycle = lifecycle
        self.clock = clock
        self.dispatcher = dispatcher
        self.logger = logger

    def _require_consensus(self, game) -> None:
        if game.mode != GameMode.CONSENSUS:
            raise StateError('Game is not in consensus mode', 'not_consensus_mode')

    def _open_round(self, game, player=None):
        self._require_consensus(game)
        if game.state != GameState.QUESTION_ACTIVE:
            raise StateError('No question is open for discussion', 'question_not_active')
        if game.paused:
            raise StateError('Game is paused', 'game_paused')
        rnd = game.current_round
        if rnd.consensus.locked:
            raise StateError('The group answer is already locked', 'consensus_locked')
        if player is not None and player.id not in rnd.eligible:
            raise StateError('You joined after this question started', 'not_eligible')
        return rnd

    # ---- discussion ----

    def propose(self, game, player, raw_answer) -> ConsensusProposal:
        rnd = self._open_round(game, player)
        question = game.current_question
        answer = question.normalize_answer(raw_answer)
        now = self.clock.now()
        rnd.intake_seq += 1
        proposal = ConsensusProposal(player.id, answer, now, rnd.intake_seq)
        rnd.consensus.proposals[player.id] = proposal
        game.touch(now)
        self.dispatcher.coalesce(game.pin, 'proposal-updated', {
            'index': rnd.index,
            'playerId': player.id,
            'proposal': question.answer_to_json(answer),
            'proposals': {
                pid: question.answer_to_json(p.answer) for pid, p in rnd.consensus.proposals.items()
            },
            'tally': self.tally_payload(game, rnd),
            **self.distribution(game, rnd),
        })
        self.logger.info(f"[propose] game={game.pin} question={rnd.index} player={player.id}")
        self.check_threshold(game, rnd)
        self.check_convergence(game)
        return proposal

    def tally_payload(self, game, rnd) -> list:
        question = game.quiz.questions[rnd.index]
        voters = len([p for p in game.connected_players() if p.id in rnd.eligible])
        return [
            {
                'answer': question.answer_to_json(answer),
                'count': count,
                'percent': round(count * 100 / voters) if voters else 0,
            }
            for answer, count in sorted(rnd.consensus.tally().items(), key=lambda kv: -kv[1])
        ]

    def distribution(self, game, rnd) -> dict:
        """Support for the leading answer, as a share of the players who can vote."""
        question = game.quiz.questions[rnd.index]
        voters = len([p for p in game.connected_players() if p.id in rnd.eligible])
        leading = self.pick_plurality(rnd)
        backers = rnd.consensus.tally().get(leading, 0) if leading is not None else 0
        return {
            'leadingAnswer': None if leading is None else question.answer_to_json(leading),
            'consensusPercent': round(backers * 100 / voters) if voters else 0,
            'totalProposals': len(rnd.consensus.proposals),
            'totalPlayers': voters,
        }

    def check_threshold(self, game, rnd) -> bool:
        """Tell the room once the leading answer crosses the quiz's consensus threshold."""
        threshold = game.quiz.settings.consensus_threshold
        dist = self.distribution(game, rnd)
        met = dist['leadingAnswer'] is not None and dist['consensusPercent'] >= threshold
        if met and not rnd.consensus.threshold_met:
            self.dispatcher.send_to_room(game.pin, 'consensus-threshold-met', {
                'index': rnd.index,
                'answer': dist['leadingAnswer'],
                'percentage': dist['consensusPercent'],
                'threshold': threshold,
            })
            self.logger.info(
                f"[consensus-threshold] game={game.pin} question={rnd.index} percent={dist['consensusPercent']}"
            )
        rnd.consensus.threshold_met = met
        return met

    def quick_response(self, game, player, kind: str, target: Optional[str] = None) -> None:
        self._require_consensus(game)
        if game.state not in (GameState.QUESTION_ACTIVE, GameState.QUESTION_REVIEW):
            raise StateError('No question is open for discussion', 'question_not_active')
        if kind not in QUICK_RESPONSES:
            raise ValidationError('Unknown quick response', 'invalid_quick_response')
        payload = {'from': player.id, 'name': player.name, 'type': kind}
        if target is not None:
            if target not in game.players:
                raise ValidationError('Unknown target player', 'invalid_target')
            payload['target'] = target
        game.touch(self.clock.now())
        self.dispatcher.send_to_room(game.pin, 'quick-response', payload, priority=CHATTER)

    def chat(self, game, player, text) -> str:
        self._require_consensus(game)
        if not game.quiz.settings.allow_chat:
            raise StateError('Chat is disabled for this game', 'chat_disabled')
        cleaned = sanitize_chat(text)
        if not cleaned:
            raise ValidationError('Message is empty', 'invalid_message')
        game.touch(self.clock.now())
        self.dispatcher.send_to_room(game.pin, 'chat-message', {
            'from': player.id,
            'name': player.name,
            'text': cleaned,
            'at': self.clock.wall_ms(),
        }, priority=CHATTER)
        return cleaned

    # ---- locking ----

    def check_convergence(self, game) -> bool:
        if game.mode != GameMode.CONSENSUS or game.state != GameState.QUESTION_ACTIVE or game.paused:
            return False
        rnd = game.current_round
        if rnd.consensus.locked:
            return False
        voters = [p for p in game.connected_players() if p.id in rnd.eligible]
        if not voters:
            return False
        proposals = rnd.consensus.proposals
        if any(p.id not in proposals for p in voters):
            return False
        if len({proposals[p.id].answer for p in voters}) != 1:
            return False
        self.logger.info(f"[consensus-converged] game={game.pin} question={rnd.index}")
        self.lifecycle.end_question(game, 'converged')
        return True

    def host_lock(self, game) -> None:
        self._open_round(game)
        self.lifecycle.end_question(game, 'host_locked')

    def pick_plurality(self, rnd):
        """Most proposed answer; ties go to the answer whose first backer proposed earliest."""
        groups = {}
        for proposal in rnd.consensus.proposals.values():
            count, first = groups.get(proposal.answer, (0, proposal.seq))
            groups[proposal.answer] = (count + 1, min(first, proposal.seq))
        if not groups:
            return None
        return min(groups.items(), key=lambda kv: (-kv[1][0], kv[1][1]))[0]

    def lock_answer(self, game, rnd) -> AnswerRecord:
        """Freeze the group answer and write the single group record."""
        question = game.quiz.questions[rnd.index]
        now = self.clock.now()
        elapsed_ms = max(0, int(round((now - rnd.started_at) * 1000)))
        answer = self.pick_plurality(rnd)
        correct = answer is not None and question.is_correct(answer)
        points = 0
        if correct:
            points = time_weighted_points(
                question.points_base, elapsed_ms, question.time_limit_ms)
        rnd.intake_seq += 1
        record = AnswerRecord(
            player_id=GROUP_PLAYER_ID,
            question_index=rnd.index,
            raw_answer=answer,
            submitted_at=now,
            elapsed_ms=elapsed_ms,
            is_correct=correct,
            points_awarded=points,
            seq=rnd.intake_seq,
        )
        rnd.answers[GROUP_PLAYER_ID] = record
        rnd.consensus.locked = True
        rnd.consensus.locked_answer = answer
        game.team_score += points
        self.dispatcher.send_to_room(game.pin, 'consensus-locked', {
            'index': rnd.index,
            'answer': None if answer is None else question.answer_to_json(answer),
            'isCorrect': correct,
            'points': points,
            'teamScore': game.team_score,
        })
        self.logger.info(
            f"[consensus-locked] game={game.pin} question={rnd.index} correct={correct} points={points}"
        )
        return record
