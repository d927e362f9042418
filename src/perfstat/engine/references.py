from __future__ import annotations

import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Mapping, Optional

from perfstat.domain.fields import FieldKey
from perfstat.domain.models import FormLayout, Question, Topic
from perfstat.engine.evaluator import evaluate, parse_number, to_operand
from perfstat.exceptions import InvalidExpression, UnresolvedReference

# Compound `question_subtopic` tokens are tried first at every position. `_` is a word
# character, so a bare `\b12\b` can never match inside `112_3` or `12_3`.
OPERAND_RE = re.compile(r"\b(\d+)_(\d+)\b|\b(\d+)\b")
_TARGET_RE = re.compile(r"^(\d+)(?:_(\d+))?$")


@dataclass(frozen=True)
class FormulaTarget:
    question_id: int
    sub_topic_id: Optional[int] = None

    @property
    def is_cell(self) -> bool:
        return self.sub_topic_id is not None


@dataclass(frozen=True)
class Formula:
    """
    Parsed `<expr>=<target>` question formula.
    """
    question_id: int
    expression: str
    target: FormulaTarget

    @classmethod
    def parse(cls, question: Question) -> "Formula":
        raw = (question.formula or "").strip()
        parts = raw.split("=")
        if len(parts) != 2:
            raise InvalidExpression(f"Formula of question {question.id} must have exactly one '='", expression=raw)
        expression, target = parts[0].strip(), parts[1].strip()
        if not expression:
            raise InvalidExpression(f"Formula of question {question.id} has an empty expression", expression=raw)
        match = _TARGET_RE.match(target)
        if not match:
            raise InvalidExpression(f"Formula of question {question.id} has invalid target {target!r}", expression=raw)
        sub_topic = int(match.group(2)) if match.group(2) else None
        return cls(
            question_id=question.id,
            expression=expression,
            target=FormulaTarget(question_id=int(match.group(1)), sub_topic_id=sub_topic),
        )

    def referenced_questions(self) -> set[int]:
        """Question ids read by the expression, whether bare or as part of a cell token."""
        ids: set[int] = set()
        for match in OPERAND_RE.finditer(self.expression):
            ids.add(int(match.group(1) or match.group(3)))
        return ids


class FieldReferenceResolver:
    """
    Replaces the operand tokens of a formula expression with current field values.

    NORMAL layout: bare `N` is question N's flat value.
    Matrix layouts: `Q_S` is the (Q, S) cell; bare `N` is the row total of question N
    across all subtopics, unless a column is given, in which case it is N's cell in
    that column. With a company, every lookup is confined to that company's cells.
    Bare numbers that are not question ids of the topic stay as numeric literals.
    """

    def __init__(self, topic: Topic, state: Mapping[FieldKey, str]):
        self.topic = topic
        self.state = state
        self._question_ids = topic.question_ids
        self._sub_topic_ids = [st.id for st in topic.sub_topics]

    def resolve(self, expression: str, *, company_id: Optional[int] = None, column: Optional[int] = None) -> str:
        layout = self.topic.layout

        def substitute(match: re.Match) -> str:
            if match.group(1) is not None:
                question_id, sub_topic_id = int(match.group(1)), int(match.group(2))
                if (
                    not layout.is_matrix
                    or question_id not in self._question_ids
                    or sub_topic_id not in self._sub_topic_ids
                ):
                    raise UnresolvedReference(
                        f"Unknown cell reference {match.group(0)} in topic {self.topic.id}",
                        expression=expression,
                    )
                return to_operand(self._cell(question_id, sub_topic_id, company_id))

            token = match.group(3)
            question_id = int(token)
            if question_id not in self._question_ids:
                return token
            if layout is FormLayout.NORMAL:
                return to_operand(parse_number(self.state.get(FieldKey.flat(question_id))))
            if column is not None:
                return to_operand(self._cell(question_id, column, company_id))
            return to_operand(self.row_total(question_id, company_id))

        return OPERAND_RE.sub(substitute, expression)

    def evaluate(self, formula: Formula, *, company_id: Optional[int] = None, column: Optional[int] = None) -> str:
        return evaluate(self.resolve(formula.expression, company_id=company_id, column=column))

    def row_total(self, question_id: int, company_id: Optional[int] = None) -> Fraction:
        return sum(
            (self._cell(question_id, sub_topic_id, company_id) for sub_topic_id in self._sub_topic_ids),
            Fraction(0),
        )

    def _cell(self, question_id: int, sub_topic_id: int, company_id: Optional[int]) -> Fraction:
        return parse_number(self.state.get(FieldKey.cell(question_id, sub_topic_id, company_id)))
