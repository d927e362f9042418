from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FieldKind(str, Enum):
    VALUE = "value"
    PDF = "pdf"
    WORD = "word"
    DATE = "date"


_TOKEN_RE = re.compile(
    r"^(?:c(?P<company>\d+):)?q(?P<question>\d+)(?::s(?P<sub_topic>\d+))?"
    r"(?::(?P<kind>value|pdf|word|date))?(?:#(?P<index>\d+))?$"
)


@dataclass(frozen=True)
class FieldKey:
    """
    Address of one form control.

    flat:            FieldKey(question_id)
    matrix:          FieldKey(question_id, sub_topic_id)
    matrix+company:  FieldKey(question_id, sub_topic_id, company_id)

    Document questions use kind PDF/WORD instead of VALUE; DATE sub-fields carry an index.
    """
    question_id: int
    sub_topic_id: Optional[int] = None
    company_id: Optional[int] = None
    kind: FieldKind = FieldKind.VALUE
    index: Optional[int] = None

    @classmethod
    def flat(cls, question_id: int) -> "FieldKey":
        return cls(question_id=question_id)

    @classmethod
    def cell(cls, question_id: int, sub_topic_id: int, company_id: Optional[int] = None) -> "FieldKey":
        return cls(question_id=question_id, sub_topic_id=sub_topic_id, company_id=company_id)

    @classmethod
    def date(cls, question_id: int, index: int) -> "FieldKey":
        return cls(question_id=question_id, kind=FieldKind.DATE, index=index)

    def with_kind(self, kind: FieldKind) -> "FieldKey":
        return FieldKey(self.question_id, self.sub_topic_id, self.company_id, kind, self.index)

    @property
    def is_document(self) -> bool:
        return self.kind in (FieldKind.PDF, FieldKind.WORD)

    def to_token(self) -> str:
        parts = []
        if self.company_id is not None:
            parts.append(f"c{self.company_id}")
        parts.append(f"q{self.question_id}")
        if self.sub_topic_id is not None:
            parts.append(f"s{self.sub_topic_id}")
        parts.append(self.kind.value)
        token = ":".join(parts)
        if self.index is not None:
            token += f"#{self.index}"
        return token

    @classmethod
    def parse(cls, token: str) -> "FieldKey":
        match = _TOKEN_RE.match(token.strip())
        if not match:
            raise ValueError(f"Invalid field key: {token!r}")
        groups = match.groupdict()
        return cls(
            question_id=int(groups["question"]),
            sub_topic_id=int(groups["sub_topic"]) if groups["sub_topic"] else None,
            company_id=int(groups["company"]) if groups["company"] else None,
            kind=FieldKind(groups["kind"] or "value"),
            index=int(groups["index"]) if groups["index"] else None,
        )

    def __str__(self) -> str:
        return self.to_token()


FormState = dict[FieldKey, str]
