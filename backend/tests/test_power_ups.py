import random

from conftest import make_quiz, mc_question
from livequiz.models import GameState
from livequiz.services.games.power_ups import hidden_options, initial_inventory


def test_inventory_is_empty_unless_enabled():
    assert initial_inventory(False) == {}
    assert set(initial_inventory(True)) == {'fifty-fifty', 'extend-time', 'double-points'}


def test_hidden_options_never_hide_the_correct_one():
    rng = random.Random(3)
    for correct in range(4):
        hidden = hidden_options(correct, 4, rng)
        assert len(hidden) == 2
        assert correct not in hidden
        assert hidden == sorted(hidden)


def test_power_ups_disabled_by_default(driver, transport):
    pin = driver.host(make_quiz())
    driver.join(pin, 'Alice')
    driver.send('host', 'start-game')
    driver.send('conn-alice', 'use-power-up', {'type': 'fifty-fifty'})
    assert transport.last('conn-alice', 'power-up-result') == {
        'success': False,
        'message': 'Power-ups are disabled for this game',
        'messageKey': 'power_ups_disabled',
    }


def test_fifty_fifty_once_per_game(driver, transport):
    pin = driver.host(make_quiz(mc_question(), mc_question(), powerUps=True))
    driver.join(pin, 'Alice')
    driver.join(pin, 'Bob')
    driver.send('host', 'start-game')

    driver.send('conn-alice', 'use-power-up', {'type': 'fifty-fifty'})
    result = transport.last('conn-alice', 'power-up-result')
    assert result['success'] and len(result['hiddenOptions']) == 2
    assert 1 not in result['hiddenOptions']

    driver.send('host', 'next-question')
    driver.send('host', 'next-question')
    driver.send('conn-alice', 'use-power-up', {'type': 'fifty-fifty'})
    assert transport.last('conn-alice', 'power-up-result')['messageKey'] == 'power_up_used'


def test_extend_time_widens_only_the_users_scoring_window(driver, transport):
    pin = driver.host(make_quiz(mc_question(time_limit=10), powerUps=True))
    alice = driver.join(pin, 'Alice')
    bob = driver.join(pin, 'Bob')
    driver.join(pin, 'Cat')
    driver.send('host', 'start-game')

    driver.send('conn-alice', 'use-power-up', {'type': 'extend-time'})
    assert transport.last('conn-alice', 'power-up-result')['extraSeconds'] == 10
    assert 'timer-extended' not in transport.names('conn-bob')

    driver.advance(4)
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    driver.send('conn-bob', 'submit-answer', {'answer': 1})
    answers = driver.game(pin).rounds[0].answers
    assert answers[alice].points_awarded == 900
    assert answers[bob].points_awarded == 800

    # The room deadline stays at the question's time limit
    driver.advance(5.5)
    game = driver.game(pin)
    assert game.state == GameState.QUESTION_ACTIVE
    driver.advance(0.5)
    assert game.state == GameState.QUESTION_REVIEW


def test_double_points_is_spent_by_the_next_submission(driver, transport):
    pin = driver.host(make_quiz(mc_question(), mc_question(), powerUps=True))
    alice = driver.join(pin, 'Alice')
    driver.send('host', 'start-game')

    driver.send('conn-alice', 'use-power-up', {'type': 'double-points'})
    assert driver.game(pin).players[alice].power_ups['double-points'].active
    driver.send('conn-alice', 'submit-answer', {'answer': 0})
    game = driver.game(pin)
    assert game.rounds[0].answers[alice].points_awarded == 0
    assert not game.players[alice].power_ups['double-points'].active

    driver.advance(5)
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    assert game.rounds[1].answers[alice].points_awarded == 1000


def test_double_points_doubles_a_correct_answer(driver, transport):
    pin = driver.host(make_quiz(powerUps=True))
    alice = driver.join(pin, 'Alice')
    driver.send('host', 'start-game')
    driver.send('conn-alice', 'use-power-up', {'type': 'double-points'})
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    assert driver.game(pin).rounds[0].answers[alice].points_awarded == 2000

def test_power_up_after_answering_is_rejected(driver, transport):
    pin = driver.host(make_quiz(powerUps=True))
    driver.join(pin, 'Alice')
    driver.join(pin, 'Bob')
    driver.send('host', 'start-game')
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    driver.send('conn-alice', 'use-power-up', {'type': 'extend-time'})
    assert transport.last('conn-alice', 'power-up-result')['messageKey'] == 'already_answered'


def test_rematch_restores_power_ups(driver, transport):
    pin = driver.host(make_quiz(powerUps=True))
    alice = driver.join(pin, 'Alice')
    driver.send('host', 'start-game')
    driver.send('conn-alice', 'use-power-up', {'type': 'double-points'})
    driver.send('host', 'next-question')
    driver.send('host', 'next-question')
    driver.send('host', 'rematch-game')
    state = driver.game(pin).players[alice].power_ups['double-points']
    assert not state.used and not state.active
