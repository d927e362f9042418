from __future__ import annotations

from typing import Iterable, Mapping

from perfstat.domain.fields import FieldKey, FieldKind
from perfstat.domain.models import PerformanceStatistic, StatisticStatus, Topic


def assemble(
    state: Mapping[FieldKey, str],
    topic: Topic,
    module_id: int,
    status: StatisticStatus = StatisticStatus.DRAFT,
) -> list[PerformanceStatistic]:
    """
    Flattens a form state into persistable records, one per field holding a value.
    Blank fields are left out; document fields are left out until a file reference exists.
    """
    records: list[PerformanceStatistic] = []
    for key, value in state.items():
        if value is None:
            continue
        text = str(value)
        if not text.strip():
            continue
        records.append(
            PerformanceStatistic(
                company_id=key.company_id,
                question_id=key.question_id,
                sub_topic_id=key.sub_topic_id,
                value=text,
                topic_id=topic.id,
                module_id=module_id,
                status=status,
                field_kind=key.kind.value,
                entry_index=key.index,
            )
        )
    return records


def record_key(record: PerformanceStatistic) -> FieldKey:
    return FieldKey(
        question_id=record.question_id,
        sub_topic_id=record.sub_topic_id,
        company_id=record.company_id,
        kind=FieldKind(record.field_kind or FieldKind.VALUE.value),
        index=record.entry_index,
    )


def prior_values(records: Iterable[PerformanceStatistic]) -> dict[FieldKey, str]:
    """Inverse of `assemble`: stored records keyed for the shape builder's prior-value lookup."""
    return {record_key(r): r.value for r in records}
