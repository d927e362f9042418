from fractions import Fraction

import pytest

from perfstat.engine.evaluator import evaluate, format_number, parse_number, to_operand
from perfstat.exceptions import DivisionByZero, InvalidExpression


@pytest.mark.parametrize(
    "expr,expected",
    [
        ("2+3*4", "14"),
        ("(2+3)*4", "20"),
        ("10-4-3", "3"),
        ("8/2/2", "2"),
        ("7/2", "3.5"),
        (" 12 - 20 ", "-8"),
        ("2*-3", "-6"),
        ("-(4+1)", "-5"),
        ("1/8", "0.125"),
        ("0", "0"),
    ],
)
def test_evaluates_with_standard_precedence(expr, expected):
    assert evaluate(expr) == expected


def test_non_terminating_result_is_rounded_decimal():
    result = evaluate("1/3")
    assert result.startswith("0.3333333333")
    assert "e" not in result.lower()


@pytest.mark.parametrize(
    "expr", ["2+alert(1)", "1.5+1", "2^3", "a", "1;2", "2+3=5", "\u0663+1", "1\u00a0+1", "1+1\n"]
)
def test_rejects_characters_outside_allow_list(expr):
    with pytest.raises(InvalidExpression):
        evaluate(expr)


@pytest.mark.parametrize("expr", ["", "   ", "2+", "(2+3", "2 3", "*4", "()"])
def test_rejects_malformed_expressions(expr):
    with pytest.raises(InvalidExpression):
        evaluate(expr)


@pytest.mark.parametrize("expr", ["5/0", "5/(3-3)", "1/(2*0)"])
def test_division_by_zero(expr):
    with pytest.raises(DivisionByZero):
        evaluate(expr)


def test_parse_number_treats_blank_and_text_as_zero():
    assert parse_number(None) == 0
    assert parse_number("") == 0
    assert parse_number("  ") == 0
    assert parse_number("n/a") == 0
    assert parse_number("2.5") == Fraction(5, 2)
    assert parse_number(" 7 ") == 7


@pytest.mark.parametrize("text", ["1e50000000", "1e999999999", "1E3", "inf", "NaN", "1/2", "\u0663", "1" * 31])
def test_parse_number_only_reads_plain_decimals(text):
    assert parse_number(text) == 0


def test_parse_number_accepts_signed_and_bare_point_forms():
    assert parse_number("-.5") == Fraction(-1, 2)
    assert parse_number("+12.") == 12
    assert parse_number("0.125") == Fraction(1, 8)


def test_operands_splice_back_into_allowed_grammar():
    assert to_operand(Fraction(4)) == "4"
    assert to_operand(Fraction(-4)) == "(-4)"
    assert to_operand(Fraction(5, 2)) == "(5/2)"
    assert evaluate(f"10-{to_operand(Fraction(-4))}") == "14"
    assert evaluate(f"2*{to_operand(Fraction(-5, 2))}") == "-5"


def test_format_number_negative_terminating():
    assert format_number(Fraction(-7, 4)) == "-1.75"
