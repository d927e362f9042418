from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Literal, Optional, Sequence

from perfstat.config import NavigationSettings, settings
from perfstat.domain.models import FormResponse, Module, NavigationInfo, Position, Topic
from perfstat.exceptions import PerfStatError

logger = logging.getLogger(__name__)

Direction = Literal["next", "previous"]

# (module_id, topic ordinal within the module, 1-based) -> form envelope, or None when nothing is there.
ContentProbe = Callable[[int, int], Optional[FormResponse]]


class NavigationGraphWalker:
    """
    Finds the next/previous populated (module, topic) position in display order.

    A position is populated when the topic has at least one question and is visible to
    the caller's role. Every walk is bounded by `max_module_search` modules and
    `max_topics_per_module` topics per module, so sparse or empty metadata terminates
    with None instead of looping.
    """

    def __init__(
        self,
        modules: Sequence[Module],
        config: Optional[NavigationSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or settings.navigation
        self.modules = sorted(
            (m for m in modules if m.active and not m.is_disabled),
            key=lambda m: (m.priority, m.id),
        )
        self._sleep = sleep
        self._skip_lock = threading.Lock()

    # --- tree walk ---

    def topics(self, module: Module, role: Optional[str] = None) -> list[Topic]:
        ordered = sorted((t for t in module.topics if t.active and t.visible_to(role)), key=lambda t: (t.priority, t.id))
        return ordered[: self.config.max_topics_per_module]

    def populated_topics(self, module: Module, role: Optional[str] = None) -> list[Topic]:
        return [t for t in self.topics(module, role) if t.questions]

    def module_step(self, module_id: int, role: Optional[str], direction: Direction) -> int:
        for rule in self.config.special_steps:
            if rule.module_id == module_id and rule.direction == direction and rule.role == role:
                return rule.step
        return 1

    def _jumped_over(self, module_id: int, role: Optional[str], direction: Direction) -> Callable[[Module], bool]:
        """
        Module ids a role-specific step jumps over: those strictly between `module_id` and
        `module_id ± step`. Jumped-over modules are never landed on, whether or not the
        target itself is active.
        """
        step = self.module_step(module_id, role, direction)
        target = module_id + step if direction == "next" else module_id - step
        low, high = sorted((module_id, target))
        return lambda module: low < module.id < high

    def _module_index(self, module_id: int) -> Optional[int]:
        for index, module in enumerate(self.modules):
            if module.id == module_id:
                return index
        return None

    def next_position(self, module_id: int, topic_id: int, role: Optional[str] = None) -> Optional[Position]:
        index = self._module_index(module_id)
        if index is None:
            logger.info("Navigation from unknown module", extra={"module_id": module_id})
            return None

        current = self.modules[index]
        topics = self.topics(current, role)
        ids = [t.id for t in topics]
        # A topic the caller cannot see has no place in the order; continue from the module boundary.
        start = ids.index(topic_id) + 1 if topic_id in ids else len(topics)
        for topic in topics[start:]:
            if topic.questions:
                return Position(module_id=current.id, topic_id=topic.id, is_same_module=True)

        skipped = self._jumped_over(module_id, role, "next")
        candidates = [m for m in self.modules[index + 1:] if not skipped(m)][: self.config.max_module_search]
        for module in candidates:
            populated = self.populated_topics(module, role)
            if populated:
                return Position(module_id=module.id, topic_id=populated[0].id, is_same_module=False)

        logger.info("No next populated position", extra={"module_id": module_id, "topic_id": topic_id})
        return None

    def previous_position(self, module_id: int, topic_id: int, role: Optional[str] = None) -> Optional[Position]:
        index = self._module_index(module_id)
        if index is None:
            logger.info("Navigation from unknown module", extra={"module_id": module_id})
            return None

        current = self.modules[index]
        topics = self.topics(current, role)
        ids = [t.id for t in topics]
        end = ids.index(topic_id) if topic_id in ids else 0
        for topic in reversed(topics[:end]):
            if topic.questions:
                return Position(module_id=current.id, topic_id=topic.id, is_same_module=True)

        skipped = self._jumped_over(module_id, role, "previous")
        earlier = [m for m in self.modules[:index] if not skipped(m)]
        candidates = earlier[max(0, len(earlier) - self.config.max_module_search):]
        for module in reversed(candidates):
            populated = self.populated_topics(module, role)
            if populated:
                return Position(module_id=module.id, topic_id=populated[-1].id, is_same_module=False)

        logger.info("No previous populated position", extra={"module_id": module_id, "topic_id": topic_id})
        return None

    def navigation_info(self, module_id: int, topic_id: int, role: Optional[str] = None) -> NavigationInfo:
        nxt = self.next_position(module_id, topic_id, role)
        prev = self.previous_position(module_id, topic_id, role)
        current: dict = {}
        index = self._module_index(module_id)
        if index is not None:
            topics = self.populated_topics(self.modules[index], role)
            ids = [t.id for t in topics]
            current = {
                "moduleId": module_id,
                "topicId": topic_id,
                "moduleIndex": index + 1,
                "totalModules": len(self.modules),
                "topicIndex": ids.index(topic_id) + 1 if topic_id in ids else None,
                "totalTopics": len(ids),
            }
            if topic_id in ids:
                current["position"] = f"{ids.index(topic_id) + 1} of {len(ids)}"
        return NavigationInfo(
            next=nxt,
            prev=prev,
            current_position=current,
            has_next=nxt is not None,
            has_previous=prev is not None,
        )

    # --- probing skip ---

    def skip_to_next_available(
        self,
        module_id: int,
        probe: ContentProbe,
        role: Optional[str] = None,
    ) -> Optional[Position]:
        """
        Probes (module id, topic ordinal) pairs one request at a time, starting at the module after
        `module_id`, until a response carries content. Only one skip may run at a time;
        a second caller gets None immediately.
        """
        if not self._skip_lock.acquire(blocking=False):
            logger.info("Skip already in progress", extra={"module_id": module_id})
            return None
        try:
            return self._probe_modules(module_id, probe, role)
        finally:
            self._skip_lock.release()

    def _probe_modules(self, module_id: int, probe: ContentProbe, role: Optional[str]) -> Optional[Position]:
        cfg = self.config
        candidate = module_id + self.module_step(module_id, role, "next")
        for _ in range(cfg.max_module_search):
            for ordinal in range(1, cfg.max_topics_per_module + 1):
                try:
                    response = probe(candidate, ordinal)
                except PerfStatError as exc:
                    logger.warning(
                        "Probe failed",
                        extra={"module_id": candidate, "ordinal": ordinal, "error": str(exc)},
                    )
                    self._sleep(cfg.probe_error_delay_seconds)
                    continue
                if response is not None and response.has_content:
                    found = _first_populated(response)
                    logger.info(
                        "Probe found content",
                        extra={"module_id": found.module_id, "topic_id": found.topic_id, "ordinal": ordinal},
                    )
                    found.is_same_module = found.module_id == module_id
                    return found
                self._sleep(cfg.probe_delay_seconds)
            candidate += 1
        logger.info("Probe search limit reached", extra={"module_id": module_id, "modules_probed": cfg.max_module_search})
        return None


def _first_populated(response: FormResponse) -> Position:
    for module in response.modules:
        for topic in module.topics:
            if topic.questions:
                return Position(module_id=module.id, topic_id=topic.id)
    raise ValueError("response has no content")
