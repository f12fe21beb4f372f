from livequiz.models import AnswerRecord, GameMode, GameState
from .errors import StateError
from .power_ups import consume_double_points
from .scoring import time_weighted_points


class AnswerIntake:
    """Classic-mode answer collection.

    Runs inside the game's lock, so the insert-once check, the record write
    and the all-answered transition check happen as one step. Every check
    runs before anything is written.
    """

    def __init__(self, lifecycle, clock, dispatcher, logger):
        self.lifecycle = lifecycle
        self.clock = clock
        self.dispatcher = dispatcher
        self.logger = logger

    def submit(self, game, player, raw_answer, question_index=None) -> AnswerRecord:
        if game.state != GameState.QUESTION_ACTIVE:
            raise StateError('No question is accepting answers', 'question_not_active')
        if question_index is not None and question_index != game.current_index:
            raise StateError('That question is no longer active', 'question_not_active')
        if game.paused:
            raise StateError('Game is paused', 'game_paused')
        if game.mode != GameMode.CLASSIC:
            raise StateError('Propose an answer in consensus mode', 'consensus_mode')
        rnd = game.current_round
        if player.id not in rnd.eligible:
            raise StateError('You joined after this question started', 'not_eligible')
        if player.id in rnd.answers:
            raise StateError('Answer already submitted', 'already_answered')

        question = game.current_question
        answer = question.normalize_answer(raw_answer)
        now = self.clock.now()
        if now >= rnd.deadline_at:
            raise StateError('Time is up', 'question_not_active')
        elapsed_ms = max(0, int(round((now - rnd.started_at) * 1000)))
        correct = question.is_correct(answer)
        multiplier = consume_double_points(player)
        points = 0
        if correct:
            limit_ms = question.time_limit_ms + rnd.extensions.get(player.id, 0)
            points = time_weighted_points(question.points_base, elapsed_ms, limit_ms) * multiplier

        rnd.intake_seq += 1
        record = AnswerRecord(
            player_id=player.id,
            question_index=rnd.index,
            raw_answer=answer,
            submitted_at=now,
            elapsed_ms=elapsed_ms,
            is_correct=correct,
            points_awarded=points,
            seq=rnd.intake_seq,
        )
        rnd.answers[player.id] = record
        player.last_answer_index = max(player.last_answer_index, rnd.index)
        game.touch(now)

        expected = len([p for p in game.connected_players() if p.id in rnd.eligible])
        if player.conn_id:
            self.dispatcher.send_to_conn(player.conn_id, 'answer-ack', {
                'index': rnd.index,
                'answer': question.answer_to_json(answer),
                'elapsedMs': elapsed_ms,
            })
        self.lifecycle.send_to_host(game, 'answer-received', {
            'playerId': player.id,
            'name': player.name,
            'index': rnd.index,
        })
        self.dispatcher.coalesce(game.pin, 'answer-count', {
            'index': rnd.index,
            'answered': rnd.answered_count,
            'expected': expected,
        })
        self.logger.info(
            f"[answer] game={game.pin} question={rnd.index} player={player.id} elapsed={elapsed_ms}ms correct={correct}"
        )
        self.lifecycle.check_all_answered(game)
        return record
