import pytest
from pydantic import ValidationError as SchemaError

from livequiz.services.games.errors import ValidationError
from livequiz.services.games.questions import (
    MultipleChoiceQuestion,
    MultipleCorrectQuestion,
    NumericQuestion,
    OrderingQuestion,
    Quiz,
    TrueFalseQuestion,
)


def test_quiz_defaults_missing_type_to_multiple_choice():
    quiz = Quiz.model_validate({
        'title': 'Capitals',
        'questions': [{'question': 'Capital of France?', 'options': ['Rome', 'Paris', 'Oslo', 'Bern'], 'correctIndex': 1}],
    })
    question = quiz.questions[0]
    assert isinstance(question, MultipleChoiceQuestion)
    assert question.time_limit == 20
    assert question.points_base == 1000
    assert quiz.settings.mode == 'classic'
    assert quiz.settings.power_ups is False


def test_quiz_rejects_empty_question_list():
    with pytest.raises(SchemaError):
        Quiz.model_validate({'title': 'Nothing', 'questions': []})


@pytest.mark.parametrize('limit', [4, 121])
def test_time_limit_is_bounded(limit):
    with pytest.raises(SchemaError):
        Quiz.model_validate({'questions': [{
            'question': 'q', 'options': ['a', 'b', 'c', 'd'], 'correctIndex': 0, 'timeLimit': limit,
        }]})


def test_multiple_choice_needs_four_options():
    with pytest.raises(SchemaError):
        MultipleChoiceQuestion.model_validate({'question': 'q', 'options': ['a', 'b'], 'correctIndex': 0})


def test_multiple_choice_answers():
    q = MultipleChoiceQuestion.model_validate({'question': 'q', 'options': ['a', 'b', 'c', 'd'], 'correctIndex': 2})
    assert q.normalize_answer('2') == 2
    assert q.is_correct(q.normalize_answer(2))
    assert not q.is_correct(q.normalize_answer(1.0))
    for bad in (4, -1, True, 'b', None, [2], '--1', '-', '\u00b2', '\u0661', '1_0', '+-2'):
        with pytest.raises(ValidationError) as info:
            q.normalize_answer(bad)
        assert info.value.message_key == 'invalid_answer'


def test_true_false_accepts_booleans_and_tokens():
    q = TrueFalseQuestion.model_validate({'question': 'Sky is blue', 'correctAnswer': True})
    assert q.correct_answer == 'true'
    assert q.is_correct(q.normalize_answer(' TRUE '))
    assert not q.is_correct(q.normalize_answer(False))
    assert q.public_payload()['options'] == ['true', 'false']
    with pytest.raises(ValidationError):
        q.normalize_answer('maybe')


def test_multiple_correct_uses_set_equality():
    q = MultipleCorrectQuestion.model_validate({
        'question': 'Primes', 'options': ['2', '3', '4', '5'], 'correctIndices': [3, 0, 1],
    })
    assert q.normalize_answer([1, 0, 3, 3]) == (0, 1, 3)
    assert q.is_correct(q.normalize_answer([3, 1, 0]))
    assert not q.is_correct(q.normalize_answer([0, 1]))
    with pytest.raises(ValidationError):
        q.normalize_answer(1)
    with pytest.raises(ValidationError):
        q.normalize_answer([7])


def test_multiple_correct_rejects_out_of_range_indices():
    with pytest.raises(SchemaError):
        MultipleCorrectQuestion.model_validate({'question': 'q', 'options': ['a', 'b'], 'correctIndices': [2]})


def test_numeric_tolerance():
    q = NumericQuestion.model_validate({'question': 'pi?', 'correctAnswer': 3.14, 'tolerance': 0.01})
    assert q.is_correct(q.normalize_answer('3.149'))
    assert not q.is_correct(q.normalize_answer(3.2))
    for bad in ('abc', float('nan'), float('inf'), True):
        with pytest.raises(ValidationError):
            q.normalize_answer(bad)


def test_numeric_tolerance_cannot_be_negative():
    with pytest.raises(SchemaError):
        NumericQuestion.model_validate({'question': 'q', 'correctAnswer': 1, 'tolerance': -1})


def test_ordering_requires_a_full_permutation():
    q = OrderingQuestion.model_validate({
        'question': 'Sort', 'items': ['b', 'a', 'c'], 'correctOrder': [1, 0, 2],
    })
    assert q.is_correct(q.normalize_answer([1, 0, 2]))
    assert not q.is_correct(q.normalize_answer([0, 1, 2]))
    for bad in ([0, 1], [0, 0, 1], [0, 1, 3], 'abc'):
        with pytest.raises(ValidationError):
            q.normalize_answer(bad)
    with pytest.raises(SchemaError):
        OrderingQuestion.model_validate({'question': 'Sort', 'items': ['a', 'b'], 'correctOrder': [0, 0]})


def test_reveal_payload_includes_explanation():
    q = MultipleChoiceQuestion.model_validate({
        'question': 'q', 'options': ['a', 'b', 'c', 'd'], 'correctIndex': 3, 'explanation': 'because',
    })
    assert q.reveal_payload() == {'type': 'multiple-choice', 'correctAnswer': 3, 'explanation': 'because'}


def test_index_strings_must_be_plain_ascii_digits():
    q = OrderingQuestion.model_validate({'question': 'Sort', 'items': ['a', 'b'], 'correctOrder': [1, 0]})
    assert q.normalize_answer([' 1 ', '0']) == (1, 0)
    for bad in (['--1', '0'], ['²', '0'], ['１', '0']):
        with pytest.raises(ValidationError) as info:
            q.normalize_answer(bad)
        assert info.value.message_key == 'invalid_answer'


def test_numeric_rejects_integers_too_large_for_a_float():
    q = NumericQuestion.model_validate({'question': 'q', 'correctAnswer': 1})
    with pytest.raises(ValidationError) as info:
        q.normalize_answer(10 ** 400)
    assert info.value.message_key == 'invalid_answer'


def test_numeric_tolerance_defaults_to_a_hundredth():
    q = NumericQuestion.model_validate({'question': 'g?', 'correctAnswer': 9.81})
    assert q.tolerance == 0.01
    assert q.is_correct(q.normalize_answer(9.815))
    assert not q.is_correct(q.normalize_answer(9.83))
