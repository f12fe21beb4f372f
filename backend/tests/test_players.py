import pytest

from conftest import make_quiz, mc_question
from livequiz.models import GameState
from livequiz.services.games.errors import ValidationError
from livequiz.services.games.registry import clean_name


def test_clean_name_rules():
    assert clean_name('  Alice ') == 'Alice'
    assert clean_name('x' * 24) == 'x' * 24
    for bad in ('', '   ', 'x' * 25, 'bad\x07name', None, 42):
        with pytest.raises(ValidationError) as info:
            clean_name(bad)
        assert info.value.message_key == 'invalid_name'


def test_join_broadcasts_and_acks(driver, transport):
    pin = driver.host(make_quiz())
    alice = driver.join(pin, 'Alice')
    ack = transport.last('conn-alice', 'join-ack')
    assert ack['pin'] == pin and ack['state'] == 'lobby' and ack['questionCount'] == 1
    assert transport.last('host', 'player-joined') == {'id': alice, 'name': 'Alice', 'total': 1}


def test_join_errors(make_driver, transport):
    driver = make_driver(MAX_PLAYERS_PER_GAME=2)
    pin = driver.host(make_quiz())
    driver.join(pin, 'Alice')

    driver.connect('dup')
    driver.send('dup', 'player-join', {'pin': pin, 'name': ' ALICE '})
    assert transport.last('dup', 'error')['messageKey'] == 'name_taken'

    driver.send('dup', 'player-join', {'pin': pin, 'name': 'Host'})
    assert transport.last('dup', 'error')['messageKey'] == 'name_taken'

    missing = '000000' if pin != '000000' else '000001'
    driver.send('dup', 'player-join', {'pin': missing, 'name': 'Zed'})
    assert transport.last('dup', 'error')['messageKey'] == 'game_not_found'

    driver.join(pin, 'Bob')
    driver.send('dup', 'player-join', {'pin': pin, 'name': 'Cat'})
    assert transport.last('dup', 'error')['messageKey'] == 'game_full'


def test_join_closed_once_running_unless_late_join(driver, transport):
    pin = driver.host(make_quiz(mc_question(time_limit=30)))
    driver.join(pin, 'Alice')
    driver.send('host', 'start-game')

    driver.connect('late')
    driver.send('late', 'player-join', {'pin': pin, 'name': 'Late'})
    assert transport.last('late', 'error')['messageKey'] == 'join_closed'


def test_late_joiner_sees_question_but_cannot_answer_it(driver, transport):
    pin = driver.host(make_quiz(mc_question(time_limit=30), mc_question()), lateJoin=True)
    driver.join(pin, 'Alice')
    driver.send('host', 'start-game')

    driver.join(pin, 'Late')
    assert transport.last('conn-late', 'question-started')['index'] == 0
    driver.send('conn-late', 'submit-answer', {'answer': 1})
    assert transport.last('conn-late', 'answer-error')['messageKey'] == 'not_eligible'

    # The late joiner does not hold the question open
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    assert driver.game(pin).state == GameState.QUESTION_REVIEW


def test_change_name_only_in_lobby(driver, transport):
    pin = driver.host(make_quiz())
    alice = driver.join(pin, 'Alice')
    driver.join(pin, 'Bob')

    driver.send('conn-alice', 'player-change-name', {'newName': 'bob'})
    assert transport.last('conn-alice', 'error')['messageKey'] == 'name_taken'

    driver.send('conn-alice', 'player-change-name', {'newName': 'Alicia'})
    assert transport.last('conn-bob', 'player-name-changed') == {'id': alice, 'oldName': 'Alice', 'name': 'Alicia'}

    driver.send('host', 'start-game')
    driver.send('conn-alice', 'player-change-name', {'newName': 'Al'})
    assert transport.last('conn-alice', 'error')['messageKey'] == 'name_change_closed'


def test_rejoin_within_grace_keeps_identity_and_score(driver, transport):
    pin = driver.host(make_quiz(mc_question(), mc_question()))
    alice = driver.join(pin, 'Alice')
    driver.join(pin, 'Bob')
    driver.send('host', 'start-game')
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    driver.send('conn-bob', 'submit-answer', {'answer': 1})
    score = driver.game(pin).players[alice].score
    assert score == 1000

    driver.drop('conn-alice')
    assert transport.last('conn-bob', 'player-disconnected') == {'id': alice, 'name': 'Alice'}
    driver.advance(10)

    rejoined = driver.join(pin, 'Alice', conn='conn-alice-2', player_id=alice)
    assert rejoined == alice
    player = driver.game(pin).players[alice]
    assert player.score == score and player.conn_id == 'conn-alice-2'
    # The grace timer was cancelled, so nothing removes her later
    driver.advance(30)
    assert alice in driver.game(pin).players


def test_grace_expiry_removes_player(driver, transport):
    pin = driver.host(make_quiz())
    alice = driver.join(pin, 'Alice')
    driver.join(pin, 'Bob')
    driver.drop('conn-alice')
    driver.advance(20)
    assert alice not in driver.game(pin).players
    assert transport.last('conn-bob', 'player-left') == {'id': alice, 'name': 'Alice', 'total': 1}

    # Leaving and joining again starts over with a fresh identity
    again = driver.join(pin, 'Alice', conn='conn-alice-2', player_id=alice)
    assert again != alice
    assert driver.game(pin).players[again].score == 0


def test_disconnect_of_last_unanswered_player_ends_question(driver, transport):
    pin = driver.host(make_quiz(mc_question(time_limit=30)))
    driver.join(pin, 'Alice')
    driver.join(pin, 'Bob')
    driver.send('host', 'start-game')
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    driver.drop('conn-bob')
    assert driver.game(pin).state == GameState.QUESTION_REVIEW


def test_leave_is_immediate(driver, transport):
    pin = driver.host(make_quiz())
    alice = driver.join(pin, 'Alice')
    driver.send('conn-alice', 'leave-game')
    assert alice not in driver.game(pin).players
    assert transport.last('host', 'player-left')['total'] == 0
    assert driver.engine.registry.lookup('conn-alice') is None


def test_host_leave_tears_down(driver, transport):
    pin = driver.host(make_quiz())
    driver.join(pin, 'Alice')
    driver.send('host', 'leave-game')
    assert transport.last('conn-alice', 'game-ended')['reason'] == 'host_left'
    assert driver.game(pin) is None


def test_host_reclaims_within_grace(driver, transport):
    pin = driver.host(make_quiz(mc_question(time_limit=60)))
    game_id = transport.last('host', 'game-created')['gameId']
    driver.join(pin, 'Alice')
    driver.drop('host')
    driver.advance(5)

    driver.connect('host-2')
    driver.send('host-2', 'host-join', {'pin': pin, 'gameId': 'wrong'})
    assert transport.last('host-2', 'error')['messageKey'] == 'not_host'

    driver.send('host-2', 'host-join', {'pin': pin, 'gameId': game_id})
    assert transport.last('host-2', 'host-rejoined')['pin'] == pin
    assert 'host-reconnected' in transport.names('conn-alice')
    driver.advance(30)
    assert driver.game(pin) is not None
    driver.send('host-2', 'start-game')
    assert driver.game(pin).state == GameState.QUESTION_ACTIVE


def test_pause_policy_freezes_the_question(make_driver, transport):
    driver = make_driver(HOST_DISCONNECT_POLICY='pause')
    pin = driver.host(make_quiz(mc_question(time_limit=10)))
    game_id = transport.last('host', 'game-created')['gameId']
    alice = driver.join(pin, 'Alice')
    driver.join(pin, 'Bob')
    driver.send('host', 'start-game')

    driver.advance(4)
    driver.drop('host')
    assert transport.last('conn-alice', 'game-paused')['remaining'] == 6
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    assert transport.last('conn-alice', 'answer-error')['messageKey'] == 'game_paused'

    # Well past the first deadline, but the question is frozen
    driver.advance(15)
    game = driver.game(pin)
    assert game.state == GameState.QUESTION_ACTIVE

    driver.connect('host-2')
    driver.send('host-2', 'host-join', {'pin': pin, 'gameId': game_id})
    assert not game.paused

    # Paused time does not count towards elapsed time
    driver.advance(1)
    driver.send('conn-alice', 'submit-answer', {'answer': 1})
    assert game.rounds[0].answers[alice].elapsed_ms == 5000

    driver.advance(5)
    assert game.state == GameState.QUESTION_REVIEW


def test_bad_names_share_one_message_key(driver, transport):
    pin = driver.host(make_quiz())
    driver.connect('c1')
    for bad in ('x' * 25, 'x' * 300, 42, None):
        driver.send('c1', 'player-join', {'pin': pin, 'name': bad})
        assert transport.last('c1', 'error')['messageKey'] == 'invalid_name'
    driver.send('c1', 'player-join', {'pin': pin})
    assert transport.last('c1', 'error')['messageKey'] == 'invalid_name'

    driver.join(pin, 'Alice')
    driver.send('conn-alice', 'player-change-name', {'newName': 'y' * 300})
    assert transport.last('conn-alice', 'error')['messageKey'] == 'invalid_name'
