"""Per-game state machine.

lobby -> question_active(0) -> question_review(0) -> ... -> finished

Every public method here expects the caller to hold ``game.lock``. Timer
callbacks re-enter through ``_on_question_deadline`` / ``_on_review_deadline``
which take the lock themselves and check that the game is still where the
timer expected it to be; a late fire is a logged no-op.
"""

import random
from typing import Optional

from livequiz.models import GROUP_PLAYER_ID, AnswerRecord, ConsensusRound, GameMode, GameState, QuestionRound
from . import power_ups
from .errors import StateError, ValidationError
from .questions import MultipleChoiceQuestion
from .scoring import streak_bonus

SHARED = 'shared'
GROUP = 'group'


def question_key(pin: str, index: int):
    return (pin, 'question', index)


def review_key(pin: str, index: int):
    return (pin, 'review', index)


class GameLifecycle:
    def __init__(self, store, registry, timers, dispatcher, clock, logger,
                 review_timeout_sec: float = 5.0, review_auto_advance: bool = True,
                 consensus_scoring: str = SHARED, rng: Optional[random.Random] = None):
        self.store = store
        self.registry = registry
        self.timers = timers
        self.dispatcher = dispatcher
        self.clock = clock
        self.logger = logger
        self.review_timeout_sec = review_timeout_sec
        self.review_auto_advance = review_auto_advance
        self.consensus_scoring = consensus_scoring if consensus_scoring in (SHARED, GROUP) else SHARED
        self.rng = rng or random.Random()
        # Wired by the engine once the coordinators exist.
        self.answers = None
        self.consensus = None

    # ---- start ----

    def start(self, game) -> None:
        if game.state != GameState.LOBBY:
            raise StateError('Game has already started', 'already_started')
        if not game.connected_players():
            raise StateError('At least one player must join before starting', 'no_players')
        game.touch(self.clock.now())
        self.dispatcher.send_to_room(game.pin, 'game-started', {
            'pin': game.pin,
            'questionCount': game.question_count,
            'mode': game.mode.value,
            'players': game.player_list(),
        })
        self.logger.info(f"[start] game={game.pin} players={len(game.players)} questions={game.question_count}")
        self._begin_question(game, 0)

    def _begin_question(self, game, index: int) -> None:
        question = game.quiz.questions[index]
        now = self.clock.now()
        limit = question.time_limit
        rnd = QuestionRound(
            index=index,
            started_at=now,
            deadline_at=now + limit,
            deadline_wall_ms=self.clock.wall_ms() + question.time_limit_ms,
            eligible={p.id for p in game.connected_players()},
            consensus=ConsensusRound() if game.mode == GameMode.CONSENSUS else None,
        )
        game.rounds[index] = rnd
        game.current_index = index
        game.state = GameState.QUESTION_ACTIVE
        game.touch(now)
        self.timers.schedule(question_key(game.pin, index), limit,
                             lambda: self._on_question_deadline(game.pin, index))
        self.logger.info(
            f"[timer-set] game={game.pin} question={index} duration={limit}s deadline={rnd.deadline_wall_ms}"
        )
        self.dispatcher.send_to_room(game.pin, 'question-started', self.question_payload(game, rnd))

    def question_payload(self, game, rnd: QuestionRound) -> dict:
        question = game.quiz.questions[rnd.index]
        return {
            **question.public_payload(),
            'index': rnd.index,
            'questionNumber': rnd.index + 1,
            'total': game.question_count,
            'timeLimit': question.time_limit,
            'deadlineAt': rnd.deadline_wall_ms,
            'mode': game.mode.value,
        }

    def send_current_question(self, game, conn: str) -> None:
        """Catch a (re)joining connection up with the question in play."""
        rnd = game.current_round
        if rnd is None:
            return
        if game.state == GameState.QUESTION_ACTIVE:
            payload = self.question_payload(game, rnd)
            payload['paused'] = game.paused
            self.dispatcher.send_to_conn(conn, 'question-started', payload)
        elif game.state == GameState.QUESTION_REVIEW and rnd.result is not None:
            self.dispatcher.send_to_conn(conn, 'question-ended', rnd.result)

    # ---- timers ----

    def _on_question_deadline(self, pin: str, index: int) -> None:
        game = self.store.get(pin)
        if game is None:
            return
        with game.lock:
            if game.closed or game.state != GameState.QUESTION_ACTIVE or game.current_index != index or game.paused:
                self.logger.info(f"[timer-abort] game={pin} question={index} state/index mismatch")
                return
            self.logger.info(f"[timer-fire] game={pin} question={index}")
            self.end_question(game, 'timeout')
        self.dispatcher.flush()

    def _on_review_deadline(self, pin: str, index: int) -> None:
        game = self.store.get(pin)
        if game is None:
            return
        with game.lock:
            if game.closed or game.state != GameState.QUESTION_REVIEW or game.current_index != index or game.paused:
                self.logger.info(f"[timer-abort] game={pin} review={index} state/index mismatch")
                return
            self._advance(game)
        self.dispatcher.flush()

    # ---- question end and scoring ----

    def end_question(self, game, reason: str) -> dict:
        rnd = game.current_round
        if game.state != GameState.QUESTION_ACTIVE or rnd is None:
            raise StateError('No question is active', 'question_not_active')
        self.timers.cancel(question_key(game.pin, rnd.index))
        game.paused_at = None
        game.paused_remaining = None
        question = game.quiz.questions[rnd.index]

        if game.mode == GameMode.CONSENSUS:
            if not rnd.consensus.locked:
                self.consensus.lock_answer(game, rnd)
            per_player = self._score_consensus(game, rnd)
        else:
            per_player = self._score_classic(game, rnd)

        game.state = GameState.QUESTION_REVIEW
        game.touch(self.clock.now())
        result = {
            'index': rnd.index,
            'type': question.type,
            'correct': question.correct_answer_payload(),
            'explanation': question.explanation,
            'perPlayer': per_player,
            'leaderboard': game.leaderboard(),
            'reason': reason,
            'isLast': rnd.index + 1 >= game.question_count,
        }
        if game.mode == GameMode.CONSENSUS:
            result['group'] = rnd.answers[GROUP_PLAYER_ID].to_dict()
            result['teamScore'] = game.team_score
        rnd.result = result
        self.dispatcher.send_to_room(game.pin, 'question-ended', result)
        self.logger.info(
            f"[question-end] game={game.pin} question={rnd.index} reason={reason} answered={rnd.answered_count}"
        )

        if self.review_auto_advance:
            index = rnd.index
            self.timers.schedule(review_key(game.pin, index), self.review_timeout_sec,
                                 lambda: self._on_review_deadline(game.pin, index))
        return result

    def _score_classic(self, game, rnd: QuestionRound) -> list:
        now = self.clock.now()
        elapsed_ms = max(0, int(round((now - rnd.started_at) * 1000)))
        per_player = []
        for player in game.players.values():
            if player.id not in rnd.eligible:
                continue
            record = rnd.answers.get(player.id)
            if record is None:
                rnd.intake_seq += 1
                record = AnswerRecord(player.id, rnd.index, None, now, elapsed_ms, False, 0, rnd.intake_seq)
                rnd.answers[player.id] = record
            bonus = 0
            if record.is_correct:
                player.streak += 1
                bonus = streak_bonus(player.streak)
                player.score += record.points_awarded + bonus
                player.correct_elapsed_ms += record.elapsed_ms
            else:
                player.streak = 0
            per_player.append({
                'id': player.id,
                'name': player.name,
                'answer': record.to_dict()['answer'],
                'isCorrect': record.is_correct,
                'points': record.points_awarded,
                'streakBonus': bonus,
                'streak': player.streak,
                'totalScore': player.score,
            })
        return per_player

    def _score_consensus(self, game, rnd: QuestionRound) -> list:
        record = rnd.answers[GROUP_PLAYER_ID]
        per_player = []
        for player in game.players.values():
            points = 0
            if self.consensus_scoring == SHARED and player.connected and player.id in rnd.eligible:
                points = record.points_awarded
                player.score += points
                if record.is_correct:
                    player.correct_elapsed_ms += record.elapsed_ms
            per_player.append({
                'id': player.id,
                'name': player.name,
                'isCorrect': record.is_correct,
                'points': points,
                'streakBonus': 0,
                'totalScore': player.score,
            })
        return per_player

    # ---- advancing ----

    def next_question(self, game) -> None:
        if game.state == GameState.QUESTION_ACTIVE:
            self.end_question(game, 'host_advanced')
        elif game.state == GameState.QUESTION_REVIEW:
            self._advance(game)
        else:
            raise StateError('There is no question to advance from', 'invalid_state')

    def _advance(self, game) -> None:
        self.timers.cancel(review_key(game.pin, game.current_index))
        game.paused_at = None
        game.paused_remaining = None
        nxt = game.current_index + 1
        if nxt < game.question_count:
            self._begin_question(game, nxt)
        else:
            self._finish(game)

    def _finish(self, game) -> None:
        game.state = GameState.FINISHED
        game.current_index = game.question_count
        game.touch(self.clock.now())
        board = game.leaderboard()
        payload = {'pin': game.pin, 'leaderboard': board}
        if game.mode == GameMode.CONSENSUS:
            payload['teamScore'] = game.team_score
        self.dispatcher.send_to_room(game.pin, 'game-end', payload)
        winner = board[0]['name'] if board else None
        self.logger.info(f"[finish] game={game.pin} players={len(board)} winner={winner!r}")

    def rematch(self, game) -> None:
        if game.state == GameState.LOBBY:
            self.dispatcher.send_to_room(game.pin, 'game-reset', self._reset_payload(game))
            return
        if game.state != GameState.FINISHED:
            raise StateError('Game is still running', 'game_in_progress')
        dropped = self.registry.drop_stale_players(game)
        enabled = game.quiz.settings.power_ups
        for player in game.players.values():
            player.reset_for_rematch(power_ups.initial_inventory(enabled))
        game.rounds.clear()
        game.team_score = 0
        game.current_index = -1
        game.state = GameState.LOBBY
        game.touch(self.clock.now())
        self.dispatcher.send_to_room(game.pin, 'game-reset', self._reset_payload(game))
        self.logger.info(f"[rematch] game={game.pin} players={len(game.players)} dropped={len(dropped)}")

    def _reset_payload(self, game) -> dict:
        return {
            'pin': game.pin,
            'title': game.title,
            'players': game.player_list(),
            'questionCount': game.question_count,
            'hostSocketId': game.host_conn,
        }

    def teardown(self, game, reason: str) -> None:
        self.dispatcher.send_to_room(game.pin, 'game-ended', {'pin': game.pin, 'reason': reason})
        self.logger.info(f"[teardown] game={game.pin} reason={reason} state={game.state.value}")
        self.store.delete(game.pin)

    # ---- host-disconnect pause policy ----

    def _running_key(self, game):
        if game.state == GameState.QUESTION_ACTIVE:
            return question_key(game.pin, game.current_index)
        if game.state == GameState.QUESTION_REVIEW:
            return review_key(game.pin, game.current_index)
        return None

    def pause(self, game) -> bool:
        key = self._running_key(game)
        if key is None or game.paused:
            return False
        now = self.clock.now()
        due = self.timers.due_at(key)
        self.timers.cancel(key)
        game.paused_at = now
        game.paused_remaining = max(0.0, due - now) if due is not None else None
        self.dispatcher.send_to_room(game.pin, 'game-paused', {
            'reason': 'host_disconnected',
            'remaining': game.paused_remaining,
        })
        self.logger.info(f"[pause] game={game.pin} state={game.state.value} remaining={game.paused_remaining}")
        return True

    def resume(self, game) -> bool:
        if not game.paused:
            return False
        now = self.clock.now()
        paused_for = now - game.paused_at
        remaining = game.paused_remaining
        game.paused_at = None
        game.paused_remaining = None
        rnd = game.current_round
        index = game.current_index
        deadline_at = None
        if game.state == GameState.QUESTION_ACTIVE and rnd is not None:
            if remaining is None:
                remaining = max(0.0, rnd.deadline_at - (now - paused_for))
            rnd.started_at += paused_for
            rnd.deadline_at = now + remaining
            rnd.deadline_wall_ms = self.clock.wall_ms() + int(round(remaining * 1000))
            deadline_at = rnd.deadline_wall_ms
            self.timers.schedule(question_key(game.pin, index), remaining,
                                 lambda: self._on_question_deadline(game.pin, index))
        elif game.state == GameState.QUESTION_REVIEW and self.review_auto_advance:
            delay = self.review_timeout_sec if remaining is None else remaining
            self.timers.schedule(review_key(game.pin, index), delay,
                                 lambda: self._on_review_deadline(game.pin, index))
        self.dispatcher.send_to_room(game.pin, 'game-resumed', {'deadlineAt': deadline_at})
        self.logger.info(f"[resume] game={game.pin} paused_for={paused_for:.3f}s remaining={remaining}")
        return True

    # ---- roster changes ----

    def on_roster_change(self, game) -> None:
        if game.state != GameState.QUESTION_ACTIVE or game.paused:
            return
        if game.mode == GameMode.CONSENSUS:
            self.consensus.check_convergence(game)
        else:
            self.check_all_answered(game)

    def check_all_answered(self, game) -> bool:
        """End the question once every connected, eligible player has answered."""
        if game.state != GameState.QUESTION_ACTIVE or game.paused or game.mode != GameMode.CLASSIC:
            return False
        rnd = game.current_round
        waiting = [
            p for p in game.connected_players()
            if p.id in rnd.eligible and p.id not in rnd.answers
        ]
        answered = [p for p in game.connected_players() if p.id in rnd.answers]
        if waiting or not answered:
            return False
        self.end_question(game, 'all_answered')
        return True

    # ---- power-ups ----

    def use_power_up(self, game, player, kind: str) -> dict:
        if kind not in power_ups.CATALOG:
            raise ValidationError('Unknown power-up', 'invalid_power_up')
        if game.mode != GameMode.CLASSIC:
            raise StateError('Power-ups are not available in consensus mode', 'power_up_unavailable')
        if game.state != GameState.QUESTION_ACTIVE or game.paused:
            raise StateError('No question is active', 'question_not_active')
        state = player.power_ups.get(kind)
        if state is None:
            raise StateError('Power-ups are disabled for this game', 'power_ups_disabled')
        if state.used:
            raise StateError('Power-up already used', 'power_up_used')
        rnd = game.current_round
        if player.id not in rnd.eligible:
            raise StateError('Joined after the question started', 'not_eligible')
        if player.id in rnd.answers:
            raise StateError('Already answered', 'already_answered')
        question = game.current_question
        result = {'success': True, 'type': kind, 'index': rnd.index}

        if kind == power_ups.FIFTY_FIFTY:
            if not isinstance(question, MultipleChoiceQuestion):
                raise ValidationError('Fifty-fifty only works on multiple-choice questions', 'power_up_not_applicable')
            result['hiddenOptions'] = power_ups.hidden_options(
                question.correct_index, len(question.options), self.rng)
        elif kind == power_ups.EXTEND_TIME:
            rnd.extensions[player.id] = power_ups.EXTEND_TIME_SEC * 1000
            result['extraSeconds'] = power_ups.EXTEND_TIME_SEC
        else:
            state.active = True
            result['active'] = True

        state.used = True
        state.available = False
        game.touch(self.clock.now())
        if player.conn_id:
            self.dispatcher.send_to_conn(player.conn_id, 'power-up-result', result)
        self.logger.info(f"[power-up] game={game.pin} player={player.id} type={kind}")
        return result

    def send_to_host(self, game, event: str, payload: dict) -> None:
        if game.host_conn and game.host_disconnected_at is None:
            self.dispatcher.send_to_conn(game.host_conn, event, payload)
