from datetime import datetime
from typing import Optional, List, Dict, Any, Union, Literal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =========================
# Enums
# =========================
class QuestionType(str, Enum):
    USER = "user"
    SUGGESTED = "suggested"


class OrderDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


# =========================
# QUERY PLAN
# =========================
class VariableRef(BaseModel):
    """Named placeholder rendered verbatim (unquoted) into SQL."""

    var: str

    model_config = ConfigDict(extra="forbid")


Scalar = Union[str, bool, int, float, None]
FilterValue = Union[VariableRef, List[Union[VariableRef, Scalar]], Scalar]


class FilterLeaf(BaseModel):
    column: str
    op: str
    value: FilterValue

    model_config = ConfigDict(extra="forbid")


class FilterGroup(BaseModel):
    logic: Literal["AND", "OR"]
    filters: List["FilterNode"] = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


FilterNode = Union[FilterGroup, FilterLeaf]

# Rebuild for forward reference resolution
FilterGroup.model_rebuild()


class OrderBy(BaseModel):
    column: str
    direction: Optional[OrderDirection] = None

    model_config = ConfigDict(extra="forbid")


class QueryPlan(BaseModel):
    table: str
    columns: List[str]
    filters: List[FilterNode] = []
    groupBy: List[str] = []
    orderBy: List[OrderBy] = []
    limit: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class CTEPlan(BaseModel):
    name: str
    query: QueryPlan

    model_config = ConfigDict(extra="forbid")


class RootQueryPlan(BaseModel):
    """Root plan: optional named CTEs plus the main query."""

    ctes: List[CTEPlan] = []
    main_query: QueryPlan

    # planners may echo fidelity/abstain inside the plan body
    model_config = ConfigDict(extra="ignore")


# =========================
# COLLABORATOR CONTRACTS
# =========================
class PlannerResponse(BaseModel):
    plan: Dict[str, Any]
    title: Optional[str] = None
    fidelity: float = 0.0
    abstain: bool = False


class ExecutionResult(BaseModel):
    rows: List[Dict[str, Any]] = []
    execution_metadata: Dict[str, Any] = {}


# =========================
# CACHE ENTRIES
# =========================
class PromptCacheEntry(BaseModel):
    job_id: str
    question_id: str


class SqlCacheEntry(BaseModel):
    question_id: str
    result: Dict[str, Any]
    chart_config: Dict[str, Any] = {}
    job_id: str


# =========================
# JOB STATE (push protocol)
# =========================
class JobState(BaseModel):
    job_id: str
    status: str
    title: Optional[str] = None
    question_content: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


# =========================
# QUESTIONS API
# =========================
class QuestionCreate(BaseModel):
    user_prompt: Optional[str] = None


class QuestionScheduled(BaseModel):
    question_id: str
    job_id: str


class QuestionResponse(BaseModel):
    id: str
    title: str
    question_content: str
    type: QuestionType = QuestionType.USER
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QuestionListResponse(BaseModel):
    suggested_questions: List[QuestionResponse] = []
    user_questions: List[QuestionResponse] = []


class QuestionDetailResponse(BaseModel):
    id: str
    title: str
    status: Literal["done", "in_progress"]
    result: Optional[Dict[str, Any]] = None
