from __future__ import annotations

import logging
import threading
from typing import Iterable, Mapping, Optional

from perfstat.domain.fields import FieldKey, FormState
from perfstat.domain.models import PerformanceStatistic, StatisticStatus, Topic, User
from perfstat.engine.recompute import RecomputationEngine, RecomputeReport
from perfstat.engine.rollup import CompanyValueCache, RollupAggregator
from perfstat.engine.shape import FormShapeBuilder
from perfstat.engine.submission import assemble
from perfstat.exceptions import FieldError

logger = logging.getLogger(__name__)


class FormSession:
    """
    Live form state of one topic for one user.

    Every change runs the recomputation pass once. When the topic is a roll-up summary,
    `rollup` computes its cells from `source_state` plus the company cache; when the topic
    is a roll-up source, every change is copied into `source_cache` so summaries see it.

    Request threads and the auto-saver share sessions; every read or write of `state`
    that iterates it goes through `lock`.
    """

    def __init__(
        self,
        topic: Topic,
        module_id: int,
        *,
        user: Optional[User] = None,
        month_year: str = "",
        companies: Iterable[int] = (),
        prior: Optional[Mapping[FieldKey, str]] = None,
        shape: Optional[FormShapeBuilder] = None,
        engine: Optional[RecomputationEngine] = None,
        rollup: Optional[RollupAggregator] = None,
        source_state: Optional[Mapping[FieldKey, str]] = None,
        source_cache: Optional[CompanyValueCache] = None,
    ):
        self.topic = topic
        self.module_id = module_id
        self.user = user or User()
        self.month_year = month_year
        self.companies: list[int] = list(dict.fromkeys(companies))
        self.prior: dict[FieldKey, str] = dict(prior or {})
        self.shape = shape or FormShapeBuilder()
        self.engine = engine or RecomputationEngine(topic)
        self.rollup = rollup
        self.source_state: dict[FieldKey, str] = dict(source_state or {})
        self.source_cache = source_cache
        self.status = StatisticStatus.DRAFT
        self.dirty = False
        self.version = 0
        self.lock = threading.RLock()
        self.last_report = RecomputeReport()
        self.state: FormState = self._build()
        self.recompute()

    def _build(self) -> FormState:
        return self.shape.build(
            self.topic,
            self.companies,
            prior=self.prior,
            rollup=self.rollup,
            source_state=self.source_state,
        )

    @property
    def is_summary(self) -> bool:
        return self.rollup is not None

    def values(self) -> dict[FieldKey, str]:
        with self.lock:
            return dict(self.state)

    def get(self, key: FieldKey) -> Optional[str]:
        return self.state.get(key)

    def set_value(self, key: FieldKey, value: Optional[str]) -> RecomputeReport:
        return self.apply({key: value})

    def apply(self, changes: Mapping[FieldKey, Optional[str]]) -> RecomputeReport:
        with self.lock:
            unknown = [str(k) for k in changes if k not in self.state]
            if unknown:
                raise FieldError(f"Unknown field(s) for topic {self.topic.id}: {', '.join(unknown)}")
            for key, value in changes.items():
                self.state[key] = "" if value is None else str(value)
            self._touch()
            return self.recompute()

    def select_companies(self, companies: Iterable[int]) -> RecomputeReport:
        """
        Re-shapes the form for a new company selection. Values already entered for a
        company that stays selected are kept.
        """
        with self.lock:
            self.prior.update(self.state)
            self.companies = list(dict.fromkeys(companies))
            self.state = self._build()
            return self.recompute()

    def update_source(self, source_state: Mapping[FieldKey, str]) -> RecomputeReport:
        with self.lock:
            self.source_state = dict(source_state)
            return self.recompute()

    def recompute(self) -> RecomputeReport:
        with self.lock:
            if self.source_cache is not None:
                self.source_cache.capture(self.state, self.topic)
            report = self.engine.run(self.state, self.companies, rollup=self.rollup, source_state=self.source_state)
            if not report.skipped:
                self.last_report = report
            return report

    def assemble(self, status: StatisticStatus) -> list[PerformanceStatistic]:
        return self.snapshot(status)[0]

    def snapshot(self, status: StatisticStatus) -> tuple[list[PerformanceStatistic], int]:
        """Records for the current state plus the edit version they were taken at."""
        with self.lock:
            return assemble(self.state, self.topic, self.module_id, status), self.version

    def mark_saved(self, status: StatisticStatus, version: Optional[int] = None) -> None:
        # An edit that landed after the snapshot keeps the session dirty.
        with self.lock:
            if status.rank > self.status.rank:
                self.status = status
            if version is None or version == self.version:
                self.dirty = False

    def _touch(self) -> None:
        self.version += 1
        self.dirty = True
