from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional

from perfstat.config import Settings, settings as default_settings
from perfstat.data.catalog import FormCatalog
from perfstat.data.store import StatisticStore, reporting_month_year
from perfstat.data.uploads import LocalUploadStore
from perfstat.domain.fields import FieldKey
from perfstat.domain.models import (
    FormResponse,
    NavigationInfo,
    PerformanceStatistic,
    Position,
    StatisticStatus,
    User,
)
from perfstat.engine.navigation import ContentProbe, NavigationGraphWalker
from perfstat.engine.recompute import RecomputationEngine, RecomputeReport
from perfstat.engine.rollup import CompanyValueCache, RollupAggregator, RollupConfig
from perfstat.engine.session import FormSession
from perfstat.engine.shape import FormShapeBuilder
from perfstat.exceptions import FieldError, MetadataError, NavigationExhausted

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    count: int
    status: StatisticStatus
    month_year: str


def month_of(month_year: str) -> Optional[int]:
    try:
        return datetime.strptime(month_year.title(), "%b %Y").month
    except ValueError:
        return None


class PerformanceFormService:
    """
    Glue between the catalog, the statistic store, the engine and uploads.

    Saves are serialized per (user, topic). A failed save raises PersistenceFailure and
    leaves the session's values and dirty flag untouched so the caller can retry.
    """

    def __init__(
        self,
        catalog: FormCatalog,
        store: StatisticStore,
        rollup: Optional[RollupConfig] = None,
        uploads: Optional[LocalUploadStore] = None,
        sessions=None,
        probe: Optional[ContentProbe] = None,
        config: Optional[Settings] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.rollup = rollup or RollupConfig()
        self.uploads = uploads
        self.sessions = sessions
        self.probe = probe
        self.config = config or default_settings
        self.shape = FormShapeBuilder(self.config.engine)
        self._save_locks: dict[tuple[int, int], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # user id -> live values of roll-up source topics seen in this process
        self._company_caches: dict[int, CompanyValueCache] = {}
        self._walker: Optional[NavigationGraphWalker] = None
        self._walker_month: Optional[int] = None

    # --- metadata ---

    def current_month_year(self) -> str:
        return reporting_month_year()

    def form_response(
        self,
        user: User,
        module_id: int,
        topic_id: int,
        month_year: Optional[str] = None,
    ) -> FormResponse:
        month_year = month_year or self.current_month_year()
        response = self.catalog.form_response(module_id, topic_id, user.role, month_of(month_year), month_year)
        response.is_success = self.store.is_submitted(user.id, topic_id, month_year)
        return response

    def form_response_at(self, user: User, module_id: int, ordinal: int) -> FormResponse:
        response = self.catalog.form_response_at(module_id, ordinal, user.role, month_of(self.current_month_year()))
        if response is None:
            raise MetadataError(f"Module {module_id} has no topic #{ordinal}")
        return response

    # --- sessions ---

    def open_session(
        self,
        user: User,
        module_id: int,
        topic_id: int,
        companies: Iterable[int] = (),
        month_year: Optional[str] = None,
    ) -> FormSession:
        month_year = month_year or self.current_month_year()
        # Raises MetadataError when the topic is not reachable for this user and month.
        self.catalog.form_response(module_id, topic_id, user.role, month_of(month_year), month_year)
        topic = self.catalog.get_topic(topic_id)

        rollup = None
        source_state: dict[FieldKey, str] = {}
        mapping = self.rollup.for_summary(topic.id)
        if mapping is not None:
            cache = self._summary_cache(user, mapping.source_topic_id, month_year)
            rollup = RollupAggregator(mapping, cache)
            source_state = self._live_source_state(user, mapping.source_topic_id)

        session = FormSession(
            topic,
            module_id,
            user=user,
            month_year=month_year,
            companies=companies,
            prior=self.store.prior_values(user.id, topic.id, month_year),
            shape=self.shape,
            engine=RecomputationEngine(topic, self.config.engine),
            rollup=rollup,
            source_state=source_state,
            source_cache=self._user_cache(user) if self.rollup.for_source(topic.id) else None,
        )
        if self.store.is_submitted(user.id, topic.id, month_year):
            session.status = StatisticStatus.SUBMITTED
        logger.info(
            "Opened form session",
            extra={"user_id": user.id, "module_id": module_id, "topic_id": topic.id, "fields": len(session.state)},
        )
        return session

    def apply_changes(self, session: FormSession, changes: Mapping[FieldKey, Optional[str]]) -> RecomputeReport:
        report = session.apply(changes)
        self._refresh_summaries(session)
        return report

    def select_companies(self, session: FormSession, companies: Iterable[int]) -> RecomputeReport:
        report = session.select_companies(companies)
        self._refresh_summaries(session)
        return report

    def close_session(self, session: FormSession) -> None:
        # Leaving a source topic drops its cached company values for this user.
        if session.source_cache is not None:
            session.source_cache.clear()

    def _user_cache(self, user: User) -> CompanyValueCache:
        return self._company_caches.setdefault(user.id, CompanyValueCache())

    def _summary_cache(self, user: User, source_topic_id: int, month_year: str) -> CompanyValueCache:
        source_topic = self.catalog.get_topic(source_topic_id)
        cache = CompanyValueCache()
        cache.capture(self.store.prior_values(user.id, source_topic_id, month_year), source_topic)
        cache.merge(self._user_cache(user))
        return cache

    def _live_source_state(self, user: User, source_topic_id: int) -> dict[FieldKey, str]:
        if self.sessions is None:
            return {}
        state: dict[FieldKey, str] = {}
        for other in self.sessions.for_user(user.id):
            if other.topic.id == source_topic_id:
                state.update(other.values())
        return state

    def _refresh_summaries(self, session: FormSession) -> None:
        if self.sessions is None or session.source_cache is None:
            return
        for mapping in self.rollup.for_source(session.topic.id):
            for other in self.sessions.for_user(session.user.id):
                if other is session or other.topic.id != mapping.summary_topic_id or other.rollup is None:
                    continue
                other.rollup.cache.merge(session.source_cache)
                other.update_source(session.values())

    # --- persistence ---

    def _save_lock(self, user_id: int, topic_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._save_locks.setdefault((user_id, topic_id), threading.Lock())

    def save(self, session: FormSession, status: StatisticStatus = StatisticStatus.SAVED) -> SaveResult:
        with self._save_lock(session.user.id, session.topic.id):
            records, version = session.snapshot(status)
            count = self.store.save(records, session.user, session.month_year)
            session.mark_saved(status, version)
        logger.info(
            "Saved form session",
            extra={"user_id": session.user.id, "topic_id": session.topic.id, "status": status.value, "count": count},
        )
        return SaveResult(count=count, status=session.status, month_year=session.month_year)

    def submit(self, session: FormSession) -> SaveResult:
        return self.save(session, StatisticStatus.SUBMITTED)

    def save_records(
        self,
        user: User,
        records: list[PerformanceStatistic],
        month_year: Optional[str] = None,
    ) -> SaveResult:
        month_year = month_year or self.current_month_year()
        for topic_id in sorted({r.topic_id for r in records}):
            self.catalog.get_topic(topic_id)
        count = self.store.save(records, user, month_year)
        status = max((r.status for r in records), key=lambda s: s.rank, default=StatisticStatus.DRAFT)
        return SaveResult(count=count, status=status, month_year=month_year)

    def status_summary(self, user: User, month_year: Optional[str] = None) -> dict:
        return self.store.status_summary(user.id, month_year or self.current_month_year())

    # --- uploads ---

    def store_upload(self, filename: str, content: bytes) -> str:
        if self.uploads is None:
            raise FieldError("File uploads are not configured")
        return self.uploads.save(filename, content)

    def upload(self, session: FormSession, key: FieldKey, filename: str, content: bytes) -> str:
        if not key.is_document or key not in session.state:
            raise FieldError(f"{key} is not a document field of topic {session.topic.id}")
        url = self.store_upload(filename, content)
        self.apply_changes(session, {key: url})
        return url

    # --- navigation ---

    def walker(self) -> NavigationGraphWalker:
        month = month_of(self.current_month_year())
        if self._walker is None or self._walker_month != month:
            self._walker = NavigationGraphWalker(self.catalog.module_tree(month=month), self.config.navigation)
            self._walker_month = month
        return self._walker

    def next_position(self, user: User, module_id: int, topic_id: int) -> Position:
        position = self.walker().next_position(module_id, topic_id, user.role)
        if position is None:
            raise NavigationExhausted(f"No content after module {module_id} topic {topic_id}")
        return position

    def previous_position(self, user: User, module_id: int, topic_id: int) -> Position:
        position = self.walker().previous_position(module_id, topic_id, user.role)
        if position is None:
            raise NavigationExhausted(f"No content before module {module_id} topic {topic_id}")
        return position

    def navigation_info(self, user: User, module_id: int, topic_id: int) -> NavigationInfo:
        return self.walker().navigation_info(module_id, topic_id, user.role)

    def skip_to_next_available(self, user: User, module_id: int) -> Position:
        probe = self.probe or self._catalog_probe(user)
        position = self.walker().skip_to_next_available(module_id, probe, user.role)
        if position is None:
            raise NavigationExhausted(f"No content found after module {module_id}")
        return position

    def _catalog_probe(self, user: User) -> ContentProbe:
        month = month_of(self.current_month_year())

        def probe(module_id: int, ordinal: int) -> Optional[FormResponse]:
            return self.catalog.form_response_at(module_id, ordinal, user.role, month)

        return probe
