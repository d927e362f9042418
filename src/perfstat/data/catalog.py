from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import ValidationError

from perfstat.domain.models import FormResponse, Module, Topic
from perfstat.engine.references import Formula
from perfstat.engine.rollup import RollupConfig
from perfstat.exceptions import FormulaError, MetadataError

logger = logging.getLogger(__name__)


class FormCatalog:
    """
    Module -> topic -> question/subtopic metadata.

    Modules and topics are kept in display order (priority, then id). Inactive modules,
    inactive topics and topics outside their month window are hidden from every lookup
    that takes a month.
    """

    def __init__(self, modules: Iterable[Module]):
        self._modules = sorted(modules, key=lambda m: (m.priority, m.id))
        for module in self._modules:
            module.topics.sort(key=lambda t: (t.priority, t.id))
            for topic in module.topics:
                if topic.module_id is None:
                    topic.module_id = module.id
                topic.sub_topics.sort(key=lambda st: (st.priority, st.id))
        self._topics: dict[int, Topic] = {}
        for module in self._modules:
            for topic in module.topics:
                if topic.id in self._topics:
                    raise MetadataError(f"Topic id {topic.id} appears in more than one module")
                self._topics[topic.id] = topic

    @classmethod
    def from_file(cls, path: Optional[Path]) -> "FormCatalog":
        if not path or not Path(path).exists():
            logger.warning("Catalog file not found; starting with an empty catalog", extra={"path": str(path)})
            return cls([])
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return cls.from_data(raw, source=str(path))

    @classmethod
    def from_data(cls, raw: Any, source: str = "<data>") -> "FormCatalog":
        items = raw.get("modules", []) if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise MetadataError(f"Catalog {source} must hold a list of modules")
        try:
            modules = [Module.model_validate(item) for item in items]
        except ValidationError as exc:
            raise MetadataError(f"Invalid catalog {source}: {exc}") from exc
        return cls(modules)

    @property
    def modules(self) -> list[Module]:
        return list(self._modules)

    def get_module(self, module_id: int) -> Module:
        for module in self._modules:
            if module.id == module_id:
                return module
        raise MetadataError(f"Unknown module {module_id}")

    def get_topic(self, topic_id: int) -> Topic:
        topic = self._topics.get(topic_id)
        if topic is None:
            raise MetadataError(f"Unknown topic {topic_id}")
        return topic

    def visible_topics(self, module: Module, role: Optional[str] = None, month: Optional[int] = None) -> list[Topic]:
        return [
            t for t in module.topics
            if t.active and t.visible_to(role) and (month is None or t.is_active_in(month))
        ]

    def module_tree(self, role: Optional[str] = None, month: Optional[int] = None) -> list[Module]:
        """Active modules, each narrowed to the topics the caller can see this month."""
        tree = []
        for module in self._modules:
            if not module.active or module.is_disabled:
                continue
            tree.append(module.model_copy(update={"topics": self.visible_topics(module, role, month)}))
        return tree

    def form_response(
        self,
        module_id: int,
        topic_id: int,
        role: Optional[str] = None,
        month: Optional[int] = None,
        month_year: str = "",
    ) -> FormResponse:
        module = self.get_module(module_id)
        topics = self.visible_topics(module, role, month)
        ids = [t.id for t in topics]
        if topic_id not in ids:
            raise MetadataError(f"Topic {topic_id} is not available in module {module_id}")
        index = ids.index(topic_id)
        tree = self.module_tree(role, month)
        position = next((i for i, m in enumerate(tree) if m.id == module_id), None)
        later = tree[position + 1:] if position is not None else []
        earlier = tree[:position] if position is not None else []
        return FormResponse(
            modules=[module.model_copy(update={"topics": [topics[index]]})],
            month_year=month_year,
            next_topic=index < len(topics) - 1,
            prev_topic=index > 0,
            next_module=any(m.has_content for m in later),
            prev_module=any(m.has_content for m in earlier),
        )

    def form_response_at(
        self,
        module_id: int,
        ordinal: int,
        role: Optional[str] = None,
        month: Optional[int] = None,
    ) -> Optional[FormResponse]:
        """Envelope for the `ordinal`-th (1-based) visible topic of a module, or None."""
        try:
            module = self.get_module(module_id)
        except MetadataError:
            return None
        topics = self.visible_topics(module, role, month)
        if not 1 <= ordinal <= len(topics):
            return None
        return self.form_response(module_id, topics[ordinal - 1].id, role, month)

    def problems(self, rollup: Optional[RollupConfig] = None) -> list[str]:
        """Configuration problems: unparseable formulas and roll-up ids missing from the catalog."""
        found: list[str] = []
        for topic in self._topics.values():
            for question in topic.questions:
                if not question.has_formula:
                    continue
                try:
                    formula = Formula.parse(question)
                except FormulaError as exc:
                    found.append(f"topic {topic.id} question {question.id}: {exc}")
                    continue
                if formula.target.question_id not in topic.question_ids:
                    found.append(
                        f"topic {topic.id} question {question.id}: target question "
                        f"{formula.target.question_id} is not in the topic"
                    )
        for mapping in (rollup.mappings if rollup else []):
            found.extend(self._rollup_problems(mapping))
        return found

    def _rollup_problems(self, mapping) -> list[str]:
        label = mapping.name or f"{mapping.summary_topic_id}<-{mapping.source_topic_id}"
        summary = self._topics.get(mapping.summary_topic_id)
        source = self._topics.get(mapping.source_topic_id)
        if summary is None or source is None:
            missing = mapping.summary_topic_id if summary is None else mapping.source_topic_id
            return [f"roll-up {label}: topic {missing} is not in the catalog"]
        found = []
        for summary_id, source_id in mapping.question_map.items():
            if summary_id not in summary.question_ids:
                found.append(f"roll-up {label}: question {summary_id} not in topic {summary.id}")
            if source_id not in source.question_ids:
                found.append(f"roll-up {label}: question {source_id} not in topic {source.id}")
        for summary_id, source_id in mapping.sub_topic_map.items():
            if summary_id not in summary.sub_topic_ids:
                found.append(f"roll-up {label}: subtopic {summary_id} not in topic {summary.id}")
            if source_id not in source.sub_topic_ids:
                found.append(f"roll-up {label}: subtopic {source_id} not in topic {source.id}")
        return found
