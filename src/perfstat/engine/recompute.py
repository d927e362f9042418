from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from perfstat.config import EngineSettings, settings
from perfstat.domain.fields import FieldKey, FormState
from perfstat.domain.models import FormLayout, Question, Topic
from perfstat.engine.references import FieldReferenceResolver, Formula
from perfstat.engine.rollup import RollupAggregator
from perfstat.engine.shape import find_count_question, parse_count, reconcile_date_fields
from perfstat.exceptions import FormulaError, UnresolvedReference

logger = logging.getLogger(__name__)


@dataclass
class FormulaFailure:
    question_id: int
    key: Optional[FieldKey]
    error: str
    message: str


@dataclass
class RecomputeReport:
    updated: dict[FieldKey, str] = field(default_factory=dict)
    failures: list[FormulaFailure] = field(default_factory=list)
    dates_added: list[FieldKey] = field(default_factory=list)
    dates_removed: list[FieldKey] = field(default_factory=list)
    skipped: bool = False


class RecomputationEngine:
    """
    Re-evaluates every formula of a topic and writes the results into their target fields.

    Formulas run in dependency order: a formula whose target question is read by another
    formula runs first. Cycles fall back to declaration order. A failing formula is logged
    and leaves its target alone (or writes the question's declared default), so one bad
    formula never blocks the others.
    """

    def __init__(self, topic: Topic, config: Optional[EngineSettings] = None):
        self.topic = topic
        self.config = config or settings.engine
        self._running = False
        self.invalid: list[FormulaFailure] = []
        self.plan: list[Formula] = self._plan()
        self.count_question = (
            find_count_question(topic, self.config.date_count_markers) if topic.layout is FormLayout.NORMAL else None
        )

    def _plan(self) -> list[Formula]:
        formulas: list[Formula] = []
        for question in self.topic.questions:
            if not question.has_formula:
                continue
            try:
                formulas.append(Formula.parse(question))
            except FormulaError as exc:
                logger.warning(
                    "Unparseable formula skipped",
                    extra={"topic_id": self.topic.id, "question_id": question.id, "formula": question.formula},
                )
                self.invalid.append(FormulaFailure(question.id, None, type(exc).__name__, str(exc)))
        return order_formulas(formulas)

    def run(
        self,
        state: FormState,
        companies: Iterable[int] = (),
        rollup: Optional[RollupAggregator] = None,
        source_state: Optional[Mapping[FieldKey, str]] = None,
    ) -> RecomputeReport:
        if self._running:
            return RecomputeReport(skipped=True)
        self._running = True
        try:
            report = RecomputeReport(failures=list(self.invalid))
            company_ids = list(companies)
            if rollup is not None:
                for key, value in rollup.compute(self.topic, company_ids, source_state or {}).items():
                    self._write(state, key, value, report)
            resolver = FieldReferenceResolver(self.topic, state)
            # Summary cells are never company-scoped.
            scopes = [] if rollup is not None else company_ids
            for formula in self.plan:
                if self.topic.layout.is_matrix:
                    self._apply_matrix(formula, state, resolver, scopes, report)
                else:
                    self._apply_flat(formula, state, resolver, report)
            # After the formula pass, so a formula-written count resizes the date fields.
            self._reconcile_dates(state, report)
            return report
        finally:
            self._running = False

    def _apply_flat(self, formula: Formula, state: FormState, resolver: FieldReferenceResolver, report: RecomputeReport) -> None:
        key = FieldKey.flat(formula.target.question_id)
        self._evaluate_into(formula, key, state, report, lambda: resolver.evaluate(formula))

    def _apply_matrix(
        self,
        formula: Formula,
        state: FormState,
        resolver: FieldReferenceResolver,
        companies: list[int],
        report: RecomputeReport,
    ) -> None:
        scopes: list[Optional[int]] = list(companies) if companies else [None]
        target = formula.target
        for company_id in scopes:
            if target.is_cell:
                key = FieldKey.cell(target.question_id, target.sub_topic_id, company_id)
                self._evaluate_into(
                    formula, key, state, report,
                    lambda c=company_id: resolver.evaluate(formula, company_id=c),
                )
                continue
            for sub_topic in self.topic.sub_topics:
                key = FieldKey.cell(target.question_id, sub_topic.id, company_id)
                self._evaluate_into(
                    formula, key, state, report,
                    lambda c=company_id, s=sub_topic.id: resolver.evaluate(formula, company_id=c, column=s),
                )

    def _evaluate_into(self, formula: Formula, key: FieldKey, state: FormState, report: RecomputeReport, compute) -> None:
        try:
            if key not in state:
                raise UnresolvedReference(f"Formula target {key} is not a field of topic {self.topic.id}")
            value = compute()
        except FormulaError as exc:
            logger.warning(
                "Formula evaluation failed",
                extra={
                    "topic_id": self.topic.id,
                    "question_id": formula.question_id,
                    "target": str(key),
                    "error": type(exc).__name__,
                    "expression": exc.expression,
                },
            )
            report.failures.append(FormulaFailure(formula.question_id, key, type(exc).__name__, str(exc)))
            fallback = self._fallback(formula.question_id)
            if fallback is not None and key in state:
                self._write(state, key, fallback, report)
            return
        self._write(state, key, value, report)

    def _fallback(self, question_id: int) -> Optional[str]:
        question: Optional[Question] = self.topic.question(question_id)
        return question.declared_default if question else None

    def _reconcile_dates(self, state: FormState, report: RecomputeReport) -> None:
        if self.count_question is None:
            return
        count = parse_count(state.get(FieldKey.flat(self.count_question.id)), self.config.max_date_fields)
        for question in self.topic.questions:
            if question.type != "DATE":
                continue
            added, removed = reconcile_date_fields(state, question.id, count)
            report.dates_added.extend(added)
            report.dates_removed.extend(removed)

    @staticmethod
    def _write(state: FormState, key: FieldKey, value: str, report: RecomputeReport) -> None:
        if state.get(key) != value:
            state[key] = value
            report.updated[key] = value


def order_formulas(formulas: list[Formula]) -> list[Formula]:
    """
    Topological order over "writes question T" -> "reads question T" edges, stable with
    respect to declaration order. Formulas caught in a cycle keep declaration order at the end.
    """
    readers: dict[int, list[int]] = {}
    indegree = [0] * len(formulas)
    for i, writer in enumerate(formulas):
        for j, reader in enumerate(formulas):
            if i != j and writer.target.question_id in reader.referenced_questions():
                readers.setdefault(i, []).append(j)
                indegree[j] += 1

    ready = deque(i for i, degree in enumerate(indegree) if degree == 0)
    ordered: list[int] = []
    while ready:
        i = ready.popleft()
        ordered.append(i)
        for j in readers.get(i, []):
            indegree[j] -= 1
            if indegree[j] == 0:
                ready.append(j)

    if len(ordered) < len(formulas):
        cyclic = [i for i in range(len(formulas)) if i not in ordered]
        logger.warning(
            "Formula dependency cycle; using declaration order",
            extra={"question_ids": [formulas[i].question_id for i in cyclic]},
        )
        ordered.extend(cyclic)
    return [formulas[i] for i in ordered]
