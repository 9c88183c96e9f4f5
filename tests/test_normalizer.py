import pytest

from calendarai.normalizer import (
    LineRecord,
    filter_candidate_lines,
    has_date_candidate,
    normalize_lines,
    normalize_text,
    split_into_lines,
)


NOISY_SAMPLES = [
    "Due:“Essay”—Nov14,2025",
    "Week 3\tLab\x0c report   due  10/02",
    "ProjectKickoff 2025-01-06\r\n\r\n  \r\nFinalExam Dec 12",
    "Room101 ‘quiz’ 14th of March\x00\x07",
    "every Tuesday and Thursday from Jan10 to Jan20 Office Hours",
    "",
    "   \n\n  ",
    "aBcDeF1g2H",
]


@pytest.mark.parametrize('text', NOISY_SAMPLES)
def test_normalize_is_idempotent(text):
    once = normalize_text(text)
    assert normalize_text(once) == once


def test_normalize_fixes_punctuation_and_glued_words():
    assert normalize_text("Due:“Essay”—Nov14,2025") == 'Due:"Essay"-Nov 14,2025'
    assert normalize_text("FinalExam") == 'Final Exam'
    assert normalize_text("Room101") == 'Room 101'
    assert normalize_text("it’s") == "it's"


def test_normalize_strips_control_characters_and_keeps_lines():
    text = "Line\x00 one\x07\r\n\r\n   \r\nLine\t\ttwo  "
    assert normalize_text(text) == 'Line one\nLine two'


def test_split_into_lines_numbers_after_dropping_blanks():
    lines = split_into_lines("first\n\n   \nsecond\nthird  ")
    assert lines == [LineRecord(1, 'first'), LineRecord(2, 'second'), LineRecord(3, 'third')]


def test_normalize_lines_empty_input():
    assert normalize_lines(None) == []
    assert normalize_lines('') == []


@pytest.mark.parametrize('line', [
    'Midterm exam Nov 14, 2025',
    'Midterm exam November 14 2025',
    'Quiz 11/14/2025',
    'Quiz 14.11.2025',
    'Quiz 3-4',
    'Launch 2025-03-03',
    'Lab report March 3',
    'Reading due sept. 9',
    'Party 14 November',
    'Party 14 th of Nov',
    'DEADLINE DEC 1',
])
def test_filter_keeps_date_shaped_lines(line):
    assert has_date_candidate(line)


@pytest.mark.parametrize('line', [
    'Read chapter four',
    'Room 101',
    'Version 2 of the syllabus',
    'Office hours by appointment',
    '',
])
def test_filter_drops_lines_without_dates(line):
    assert not has_date_candidate(line)


def test_filter_candidate_lines_preserves_order_and_numbers():
    lines = normalize_lines("Course outline\nQuiz 1 on 2025-09-15\nNo class\nFinal Dec 12")
    kept = filter_candidate_lines(lines)
    assert [(l.line_number, l.text) for l in kept] == [(2, 'Quiz 1 on 2025-09-15'), (4, 'Final Dec 12')]
