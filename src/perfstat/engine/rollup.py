from __future__ import annotations

import logging
import threading
from fractions import Fraction
from pathlib import Path
from typing import Iterable, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from perfstat.domain.fields import FieldKey, FieldKind
from perfstat.domain.models import Topic
from perfstat.engine.evaluator import format_number, parse_number
from perfstat.exceptions import ConfigError

logger = logging.getLogger(__name__)


class RollupMapping(BaseModel):
    """
    Summary topic whose cells are the per-company sums of a company-scoped source topic.
    `question_map` / `sub_topic_map` translate summary ids into source ids.
    """
    name: str = ""
    summary_topic_id: int
    source_topic_id: int
    question_map: dict[int, int] = Field(default_factory=dict)
    sub_topic_map: dict[int, int] = Field(default_factory=dict)

    @field_validator("question_map", "sub_topic_map")
    @classmethod
    def _positive_and_injective(cls, value: dict[int, int]) -> dict[int, int]:
        for summary_id, source_id in value.items():
            if summary_id <= 0 or source_id <= 0:
                raise ValueError(f"ids must be positive, got {summary_id} -> {source_id}")
        targets = list(value.values())
        duplicates = sorted({t for t in targets if targets.count(t) > 1})
        if duplicates:
            raise ValueError(f"source ids mapped more than once: {duplicates}")
        return value

    @model_validator(mode="after")
    def _distinct_topics(self) -> "RollupMapping":
        if self.summary_topic_id == self.source_topic_id:
            raise ValueError("summary and source topic must differ")
        return self

    def source_cell(self, question_id: int, sub_topic_id: int) -> Optional[tuple[int, int]]:
        source_question = self.question_map.get(question_id)
        source_sub_topic = self.sub_topic_map.get(sub_topic_id)
        if source_question is None or source_sub_topic is None:
            return None
        return source_question, source_sub_topic


class RollupConfig(BaseModel):
    mappings: list[RollupMapping] = Field(default_factory=list)

    def for_summary(self, topic_id: int) -> Optional[RollupMapping]:
        for mapping in self.mappings:
            if mapping.summary_topic_id == topic_id:
                return mapping
        return None

    def for_source(self, topic_id: int) -> list[RollupMapping]:
        return [m for m in self.mappings if m.source_topic_id == topic_id]


def load_rollup_config(path: Optional[Path]) -> RollupConfig:
    if not path or not Path(path).exists():
        logger.info("No roll-up mapping file found", extra={"path": str(path)})
        return RollupConfig()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    try:
        return RollupConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid roll-up mapping in {path}: {exc}") from exc


class CompanyValueCache:
    """
    Last known source-topic values per company: company -> question -> subtopic -> value.
    Filled when the source topic is loaded or edited; cleared on navigation.
    """

    def __init__(self):
        self._values: dict[int, dict[int, dict[int, Fraction]]] = {}
        self._lock = threading.RLock()

    def set(self, company_id: int, question_id: int, sub_topic_id: int, value: Optional[str]) -> None:
        with self._lock:
            questions = self._values.setdefault(company_id, {})
            questions.setdefault(question_id, {})[sub_topic_id] = parse_number(value)

    def get(self, company_id: int, question_id: int, sub_topic_id: int) -> Optional[Fraction]:
        return self._values.get(company_id, {}).get(question_id, {}).get(sub_topic_id)

    def capture(self, state: Mapping[FieldKey, str], topic: Topic) -> int:
        """Copies every company-scoped cell of `topic` found in `state`; returns the count."""
        question_ids = topic.question_ids
        sub_topic_ids = topic.sub_topic_ids
        captured = 0
        with self._lock:
            for key, value in list(state.items()):
                if (
                    key.company_id is None
                    or key.kind is not FieldKind.VALUE
                    or key.question_id not in question_ids
                    or key.sub_topic_id not in sub_topic_ids
                ):
                    continue
                self.set(key.company_id, key.question_id, key.sub_topic_id, value)
                captured += 1
        return captured

    def merge(self, other: "CompanyValueCache") -> None:
        """Copies every value of `other` over this cache's values."""
        with other._lock:
            copied = {c: {q: dict(s) for q, s in qs.items()} for c, qs in other._values.items()}
        with self._lock:
            for company_id, questions in copied.items():
                for question_id, sub_topics in questions.items():
                    self._values.setdefault(company_id, {}).setdefault(question_id, {}).update(sub_topics)

    def companies(self) -> list[int]:
        return sorted(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def __len__(self) -> int:
        return sum(len(subs) for questions in self._values.values() for subs in questions.values())


class RollupAggregator:
    def __init__(self, mapping: RollupMapping, cache: CompanyValueCache):
        self.mapping = mapping
        self.cache = cache

    def company_value(
        self,
        company_id: int,
        question_id: int,
        sub_topic_id: int,
        source_state: Mapping[FieldKey, str],
    ) -> Fraction:
        live = source_state.get(FieldKey.cell(question_id, sub_topic_id, company_id))
        if live is not None and str(live).strip() != "":
            return parse_number(live)
        cached = self.cache.get(company_id, question_id, sub_topic_id)
        return cached if cached is not None else Fraction(0)

    def summary_cell(
        self,
        question_id: int,
        sub_topic_id: int,
        companies: Iterable[int],
        source_state: Mapping[FieldKey, str],
    ) -> Optional[Fraction]:
        source = self.mapping.source_cell(question_id, sub_topic_id)
        if source is None:
            return None
        source_question, source_sub_topic = source
        return sum(
            (self.company_value(c, source_question, source_sub_topic, source_state) for c in companies),
            Fraction(0),
        )

    def compute(
        self,
        summary_topic: Topic,
        companies: Iterable[int],
        source_state: Mapping[FieldKey, str],
    ) -> dict[FieldKey, str]:
        company_ids = list(companies)
        values: dict[FieldKey, str] = {}
        for question in summary_topic.questions:
            for sub_topic in summary_topic.sub_topics:
                total = self.summary_cell(question.id, sub_topic.id, company_ids, source_state)
                values[FieldKey.cell(question.id, sub_topic.id)] = "0" if total is None else format_number(total)
        return values
