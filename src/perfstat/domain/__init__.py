from perfstat.domain.fields import FieldKey, FieldKind, FormState
from perfstat.domain.models import (
    FormLayout,
    FormResponse,
    Module,
    NavigationInfo,
    PerformanceStatistic,
    Position,
    Question,
    SaveStatisticsRequest,
    StatisticStatus,
    SubTopic,
    Topic,
    User,
)

__all__ = [
    "FieldKey",
    "FieldKind",
    "FormLayout",
    "FormResponse",
    "FormState",
    "Module",
    "NavigationInfo",
    "PerformanceStatistic",
    "Position",
    "Question",
    "SaveStatisticsRequest",
    "StatisticStatus",
    "SubTopic",
    "Topic",
    "User",
]
