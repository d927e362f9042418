from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class FormLayout(str, Enum):
    NORMAL = "NORMAL"
    QUESTION_BY_SUBTOPIC = "Q/ST"
    SUBTOPIC_BY_QUESTION = "ST/Q"

    @property
    def is_matrix(self) -> bool:
        return self is not FormLayout.NORMAL


class StatisticStatus(str, Enum):
    DRAFT = "DRAFT"
    SAVED = "SAVED"
    SUBMITTED = "SUBMITTED"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [StatisticStatus.DRAFT, StatisticStatus.SAVED, StatisticStatus.SUBMITTED]

# Server-side default-value policies; never usable as a literal field value.
DEFAULT_POLICIES = {"PREVIOUS", "QUESTION", "NONE", "PS", "SUB", "CIRCLE", "PSOP"}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SubTopic(_CamelModel):
    id: int
    name: str = Field("", alias="subTopicName")
    code: Optional[str] = Field(None, alias="subTopicCode")
    priority: int = 0
    is_disabled: bool = False


class Question(_CamelModel):
    id: int
    text: str = Field("", alias="question")
    type: str = "NUMBER"
    formula: Optional[str] = None
    default_value: Optional[str] = Field(None, alias="defaultVal")
    default_question_id: Optional[int] = Field(None, alias="defaultQue")
    current_count: Optional[str] = None
    current_count_list: list[Optional[str]] = Field(default_factory=list)
    value_list: list[Optional[str]] = Field(default_factory=list)
    previous_count: Optional[str] = None
    fin_year_count: Optional[str] = None
    is_cumulative: bool = False
    is_previous: bool = False
    is_disabled: bool = False
    sub_topic_id: Optional[int] = None
    priority: int = 0

    @model_validator(mode="before")
    @classmethod
    def _stringify_counts(cls, data: Any) -> Any:
        # Counts arrive as numbers or strings depending on the producer.
        if not isinstance(data, dict):
            return data
        clean = dict(data)
        for key in ("currentCount", "current_count", "previousCount", "previous_count",
                    "finYearCount", "fin_year_count", "defaultVal", "default_value"):
            value = clean.get(key)
            if value is not None and not isinstance(value, str):
                clean[key] = str(value)
        for key in ("currentCountList", "current_count_list", "valueList", "value_list"):
            values = clean.get(key)
            if isinstance(values, list):
                clean[key] = [None if v is None else str(v) for v in values]
        return clean

    @property
    def has_formula(self) -> bool:
        return bool(self.formula and self.formula.strip())

    @property
    def declared_default(self) -> Optional[str]:
        """
        Literal default value, or None when the stored default is a server-side policy keyword.
        """
        if self.default_value is None:
            return None
        value = self.default_value.strip()
        if not value or value.upper() in DEFAULT_POLICIES:
            return None
        return value

    @property
    def current(self) -> Optional[str]:
        if self.current_count is None:
            return None
        value = self.current_count.strip()
        if not value or value.upper() == "NONE":
            return None
        return value


class Topic(_CamelModel):
    id: int
    name: str = Field("", alias="topicName")
    sub_name: str = Field("", alias="topicSubName")
    layout: FormLayout = Field(FormLayout.NORMAL, alias="formType")
    module_id: Optional[int] = None
    priority: int = 0
    active: bool = True
    show_previous: bool = Field(False, alias="isShowPrevious")
    show_cumulative: bool = Field(False, alias="isShowCummulative")
    start_month: Optional[int] = None
    end_month: Optional[int] = None
    roles: list[str] = Field(default_factory=list)
    questions: list[Question] = Field(
        default_factory=list,
        validation_alias=AliasChoices("questionDTOs", "questions"),
        serialization_alias="questionDTOs",
    )
    sub_topics: list[SubTopic] = Field(default_factory=list)

    def question(self, question_id: int) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    @property
    def question_ids(self) -> set[int]:
        return {q.id for q in self.questions}

    @property
    def sub_topic_ids(self) -> set[int]:
        return {st.id for st in self.sub_topics}

    def is_active_in(self, month: int) -> bool:
        """
        Topics may be limited to a month window; a window may wrap the year end (e.g. Oct..Mar).
        """
        if self.start_month is None or self.end_month is None:
            return True
        if self.start_month <= self.end_month:
            return self.start_month <= month <= self.end_month
        return month >= self.start_month or month <= self.end_month

    def visible_to(self, role: Optional[str]) -> bool:
        if not self.roles:
            return True
        return role is not None and role in self.roles


class Module(_CamelModel):
    id: int
    name: str = Field("", alias="moduleName")
    priority: int = 0
    active: bool = True
    is_disabled: bool = False
    topics: list[Topic] = Field(
        default_factory=list,
        validation_alias=AliasChoices("topicDTOs", "topics"),
        serialization_alias="topicDTOs",
    )

    @property
    def has_content(self) -> bool:
        return any(topic.questions for topic in self.topics)


class PerformanceStatistic(_CamelModel):
    """
    Flattened, persistable form of one form field.
    """
    company_id: Optional[int] = None
    question_id: int
    sub_topic_id: Optional[int] = None
    value: str
    topic_id: int
    module_id: int
    status: StatisticStatus = StatisticStatus.DRAFT
    field_kind: str = "value"
    entry_index: Optional[int] = None


class SaveStatisticsRequest(_CamelModel):
    performance_statistics: list[PerformanceStatistic] = Field(default_factory=list)


class FormResponse(_CamelModel):
    """
    Per-topic form document exchanged with the metadata collaborator.
    """
    modules: list[Module] = Field(default_factory=list)
    user_district: str = ""
    month_year: str = ""
    is_success: bool = False
    next_module: bool = False
    prev_module: bool = False
    next_topic: bool = False
    prev_topic: bool = False

    @property
    def has_content(self) -> bool:
        return any(module.has_content for module in self.modules)


class Position(_CamelModel):
    module_id: int
    topic_id: int
    is_same_module: bool = True


class User(BaseModel):
    """
    Caller identity as handed over by the authentication layer.
    """
    id: int = 0
    role: Optional[str] = None
    battalion_id: Optional[int] = None


class NavigationInfo(_CamelModel):
    next: Optional[Position] = None
    prev: Optional[Position] = None
    current_position: dict[str, Any] = Field(default_factory=dict)
    has_next: bool = False
    has_previous: bool = False
