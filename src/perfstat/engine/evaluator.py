"""
Restricted arithmetic evaluator for question formulas.

Accepts ASCII digits, spaces, tabs and ``+ - * / ( )`` only. Evaluation is exact
(rational arithmetic), so results like ``7/2`` come back as ``"3.5"`` rather
than a float approximation. Uses recursive descent parsing; nothing is ever
handed to ``eval``.
"""
from __future__ import annotations

import re
from decimal import Decimal, localcontext
from fractions import Fraction
from typing import Optional

from perfstat.exceptions import DivisionByZero, InvalidExpression

ALLOWED_RE = re.compile(r"[0-9 \t+\-*/()]*")
_TOKEN_RE = re.compile(r"[ \t]*(?:([0-9]+)|([+\-*/()]))")
# Field values: plain decimal notation, at most 30 digits either side of the point.
_NUMBER_RE = re.compile(r"[+-]?(?:[0-9]{1,30}(?:\.[0-9]{0,30})?|\.[0-9]{1,30})")

_NON_TERMINATING_PRECISION = 28


def evaluate(expression: str) -> str:
    """Evaluate ``expression`` and return the result as a decimal string."""
    return format_number(evaluate_fraction(expression))


def evaluate_fraction(expression: str) -> Fraction:
    if expression is None or not ALLOWED_RE.fullmatch(expression):
        raise InvalidExpression("Expression contains disallowed characters", expression=expression)
    tokens = _tokenize(expression)
    if not tokens:
        raise InvalidExpression("Empty expression", expression=expression)
    parser = _Parser(tokens, expression)
    value = parser.parse_expr()
    if parser.peek() is not None:
        raise InvalidExpression(f"Unexpected token {parser.peek()[1]!r}", expression=expression)
    return value


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if not match:
            if expression[pos:].strip():
                raise InvalidExpression(f"Invalid character at position {pos}", expression=expression)
            break
        if match.group(1):
            tokens.append(("NUM", match.group(1)))
        else:
            tokens.append(("OP", match.group(2)))
        pos = match.end()
    return tokens


class _Parser:
    """
    expr  = term (('+' | '-') term)*
    term  = unary (('*' | '/') unary)*
    unary = ('+' | '-') unary | atom
    atom  = NUMBER | '(' expr ')'
    """

    def __init__(self, tokens: list[tuple[str, str]], source: str):
        self.tokens = tokens
        self.source = source
        self.pos = 0

    def peek(self) -> Optional[tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def advance(self) -> tuple[str, str]:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def parse_expr(self) -> Fraction:
        left = self.parse_term()
        while True:
            tok = self.peek()
            if tok and tok == ("OP", "+"):
                self.advance()
                left = left + self.parse_term()
            elif tok and tok == ("OP", "-"):
                self.advance()
                left = left - self.parse_term()
            else:
                return left

    def parse_term(self) -> Fraction:
        left = self.parse_unary()
        while True:
            tok = self.peek()
            if tok and tok == ("OP", "*"):
                self.advance()
                left = left * self.parse_unary()
            elif tok and tok == ("OP", "/"):
                self.advance()
                right = self.parse_unary()
                if right == 0:
                    raise DivisionByZero("Division by zero", expression=self.source)
                left = left / right
            else:
                return left

    def parse_unary(self) -> Fraction:
        tok = self.peek()
        if tok and tok == ("OP", "-"):
            self.advance()
            return -self.parse_unary()
        if tok and tok == ("OP", "+"):
            self.advance()
            return self.parse_unary()
        return self.parse_atom()

    def parse_atom(self) -> Fraction:
        tok = self.peek()
        if tok is None:
            raise InvalidExpression("Unexpected end of expression", expression=self.source)
        if tok[0] == "NUM":
            self.advance()
            return Fraction(int(tok[1]))
        if tok == ("OP", "("):
            self.advance()
            value = self.parse_expr()
            if self.peek() != ("OP", ")"):
                raise InvalidExpression("Missing closing parenthesis", expression=self.source)
            self.advance()
            return value
        raise InvalidExpression(f"Unexpected token {tok[1]!r}", expression=self.source)


def format_number(value: Fraction) -> str:
    if value.denominator == 1:
        return str(value.numerator)

    den = value.denominator
    twos = fives = 0
    while den % 2 == 0:
        den //= 2
        twos += 1
    while den % 5 == 0:
        den //= 5
        fives += 1

    if den == 1:
        # Terminating decimal: scale to an integer and place the point.
        places = max(twos, fives)
        scaled = abs(value.numerator) * 10**places // value.denominator
        digits = str(scaled).rjust(places + 1, "0")
        text = f"{digits[:-places]}.{digits[-places:]}".rstrip("0").rstrip(".")
        return f"-{text}" if value < 0 else text

    with localcontext() as ctx:
        ctx.prec = _NON_TERMINATING_PRECISION
        result = Decimal(value.numerator) / Decimal(value.denominator)
    return format(result.normalize(), "f")


def parse_number(value: Optional[str]) -> Fraction:
    """
    Numeric value of a field. Blank, unset and non-numeric text all count as 0, and so
    does anything that is not plain decimal notation (exponents, fractions, "inf").
    """
    if value is None:
        return Fraction(0)
    text = str(value).strip()
    if not _NUMBER_RE.fullmatch(text):
        return Fraction(0)
    return Fraction(Decimal(text))


def to_operand(value: Fraction) -> str:
    """
    Render a value so it can be spliced back into an allow-listed expression.
    Non-integers become a parenthesised exact ratio, negatives get a unary minus.
    """
    if value.denominator == 1:
        text = str(abs(value.numerator))
    else:
        text = f"{abs(value.numerator)}/{value.denominator}"
    if value < 0:
        return f"(-{text})"
    if value.denominator != 1:
        return f"({text})"
    return text
