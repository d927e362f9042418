from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional, Sequence

from perfstat.config import EngineSettings, settings
from perfstat.domain.fields import FieldKey, FieldKind, FormState
from perfstat.domain.models import Question, Topic
from perfstat.engine.evaluator import parse_number
from perfstat.engine.rollup import RollupAggregator

logger = logging.getLogger(__name__)


def date_field_keys(question_id: int, count: int) -> list[FieldKey]:
    """Ordered DATE sub-field keys for a count of `count` entries."""
    return [FieldKey.date(question_id, i) for i in range(max(0, count))]


def reconcile_date_fields(state: FormState, question_id: int, count: int) -> tuple[list[FieldKey], list[FieldKey]]:
    """
    Brings the DATE sub-fields of `question_id` in `state` in line with `count`.
    Existing values are kept for indices that survive. Returns (added, removed).
    """
    wanted = date_field_keys(question_id, count)
    wanted_set = set(wanted)
    existing = [k for k in state if k.kind is FieldKind.DATE and k.question_id == question_id]
    removed = [k for k in existing if k not in wanted_set]
    for key in removed:
        del state[key]
    added = [k for k in wanted if k not in state]
    for key in added:
        state[key] = ""
    return added, removed


def find_count_question(topic: Topic, markers: Sequence[str]) -> Optional[Question]:
    for question in topic.questions:
        if question.type == "DATE":
            continue
        text = question.text or ""
        if any(marker and marker in text for marker in markers):
            return question
    return None


def parse_count(value: Optional[str], limit: int) -> int:
    number = parse_number(value)
    return max(0, min(int(number), limit))


class FormShapeBuilder:
    """
    Enumerates every addressable field of a topic with its initial value.

    Initial value precedence: prior submission for the exact key, then the count the
    metadata reports for the question, then the question's declared default, then
    "0" for matrix cells and "" for flat fields.
    """

    def __init__(self, config: Optional[EngineSettings] = None):
        self.config = config or settings.engine
        self.document_types = {t.upper() for t in self.config.document_types}

    def is_document(self, question: Question) -> bool:
        return (question.type or "").upper() in self.document_types

    def build(
        self,
        topic: Topic,
        companies: Iterable[int] = (),
        prior: Optional[Mapping[FieldKey, str]] = None,
        rollup: Optional[RollupAggregator] = None,
        source_state: Optional[Mapping[FieldKey, str]] = None,
    ) -> FormState:
        prior = prior or {}
        if rollup is not None:
            # Roll-up summary cells always come from the aggregation, never from stored values.
            return rollup.compute(topic, companies, source_state or {})
        if topic.layout.is_matrix:
            return self._build_matrix(topic, list(companies), prior)
        return self._build_flat(topic, prior)

    def _build_flat(self, topic: Topic, prior: Mapping[FieldKey, str]) -> FormState:
        state: FormState = {}
        count_question = find_count_question(topic, self.config.date_count_markers)
        for question in topic.questions:
            key = FieldKey.flat(question.id)
            if self.is_document(question):
                for kind in (FieldKind.PDF, FieldKind.WORD):
                    doc_key = key.with_kind(kind)
                    state[doc_key] = prior.get(doc_key, "") or ""
            elif question.type == "DATE":
                if count_question is None:
                    logger.warning(
                        "DATE question without a count question", extra={"topic_id": topic.id, "question_id": question.id}
                    )
                    continue
                count_value = prior.get(FieldKey.flat(count_question.id)) or count_question.current
                count = parse_count(count_value, self.config.max_date_fields)
                for date_key in date_field_keys(question.id, count):
                    state[date_key] = prior.get(date_key, "") or ""
            else:
                state[key] = self._flat_initial(question, prior.get(key))
        return state

    def _flat_initial(self, question: Question, prior_value: Optional[str]) -> str:
        if prior_value is not None and prior_value != "":
            return prior_value
        if question.current is not None:
            return question.current
        if question.declared_default is not None:
            return question.declared_default
        return self.config.flat_blank_value

    def _build_matrix(self, topic: Topic, companies: list[int], prior: Mapping[FieldKey, str]) -> FormState:
        state: FormState = {}
        scopes: list[Optional[int]] = list(companies) if companies else [None]
        for company_id in scopes:
            for question in topic.questions:
                for index, sub_topic in enumerate(topic.sub_topics):
                    key = FieldKey.cell(question.id, sub_topic.id, company_id)
                    if self.is_document(question):
                        for kind in (FieldKind.PDF, FieldKind.WORD):
                            doc_key = key.with_kind(kind)
                            state[doc_key] = prior.get(doc_key, "") or ""
                        continue
                    state[key] = self._cell_initial(question, index, prior.get(key))
        return state

    def _cell_initial(self, question: Question, index: int, prior_value: Optional[str]) -> str:
        if prior_value is not None and prior_value != "":
            return prior_value
        for values in (question.current_count_list, question.value_list):
            if index < len(values) and values[index] not in (None, ""):
                return values[index]
        if question.current is not None:
            return question.current
        if question.declared_default is not None:
            return question.declared_default
        return self.config.matrix_blank_value
