# exam_portal/scoring.py
"""Answer-key scoring. Everything here is pure: no store access, no clock."""
from collections import namedtuple

from .models import QuestionTypeEnum

ScoreBreakdown = namedtuple('ScoreBreakdown', ['total', 'correct', 'answered', 'ungraded', 'max_total'])

# Lower bound (percentage) for each letter grade, best first
GRADE_BOUNDARIES = (
    (70, 'A'),
    (60, 'B'),
    (50, 'C'),
    (40, 'D'),
)


def _question_type(question):
    qtype = getattr(question, 'question_type', QuestionTypeEnum.MULTIPLE_CHOICE)
    if isinstance(qtype, QuestionTypeEnum):
        return qtype
    return QuestionTypeEnum(qtype or QuestionTypeEnum.MULTIPLE_CHOICE.value)


def _lookup(answers, question_id):
    # JSON payloads key answers by string ids
    if question_id in answers:
        return answers[question_id]
    return answers.get(str(question_id))


def _is_blank(value):
    return value is None or str(value).strip() == ''


def score_answers(questions, answers):
    """
    Score an answer set against the questions' answer key.

    ``questions`` is any iterable of objects with ``id``, ``correct_answer``,
    ``marks`` and optionally ``question_type``. ``answers`` maps question id
    to the student's value. A question earns its marks only when the answer
    equals the key exactly, whitespace and case included. Short-answer
    questions are never auto-scored; they are counted in ``ungraded`` and
    earn nothing here.
    """
    total = 0.0
    max_total = 0.0
    correct = answered = ungraded = 0

    for question in questions:
        marks = float(question.marks if question.marks is not None else 1)
        max_total += marks

        given = _lookup(answers, question.id)
        if _is_blank(given):
            continue
        answered += 1

        if _question_type(question) is QuestionTypeEnum.SHORT_ANSWER:
            ungraded += 1
            continue
        if question.correct_answer is None:
            continue
        if str(given) == str(question.correct_answer):
            total += marks
            correct += 1

    return ScoreBreakdown(total=total, correct=correct, answered=answered,
                          ungraded=ungraded, max_total=max_total)


def percentage(score, total_marks):
    if not total_marks:
        return 0.0
    return round(score / total_marks * 100.0, 2)


def calculate_grade(pct):
    for lower_bound, grade in GRADE_BOUNDARIES:
        if pct >= lower_bound:
            return grade
    return 'F'
