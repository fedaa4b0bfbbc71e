# src/autoloop/core/schemas.py
"""
Payload schemas for structured Oracle output.

Every JSON answer the Oracle gives is validated against one of these before
it is turned into a domain model. Validation failures surface as
MalformedOracleResponse (see autoloop.core.structured).
"""
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator

from autoloop.core.models import (
    CognitivePrinciple, IssueType, QueryType, Severity, SynthesisStrategy, UIComponentTree
)


# ============================================================================
# QUERY PLANNING
# ============================================================================

class SubQueryPayload(BaseModel):
    query_id: Optional[str] = None
    query_text: str = Field(min_length=1)
    query_type: QueryType = QueryType.CODE_SEARCH
    filters: Dict[str, Any] = Field(default_factory=dict)


class PlanPayload(BaseModel):
    sub_queries: List[SubQueryPayload] = Field(default_factory=list)
    synthesis_strategy: SynthesisStrategy = SynthesisStrategy.CONCATENATE


class CodeContextPayload(BaseModel):
    file_path: str
    content: str = ""
    relevance: float = 0.0
    dependencies: List[str] = Field(default_factory=list)
    exports: List[str] = Field(default_factory=list)


class ContextsPayload(BaseModel):
    contexts: List[CodeContextPayload] = Field(default_factory=list)


# ============================================================================
# WORKFLOW
# ============================================================================

class GeneratedTestPayload(BaseModel):
    test_code: str = Field(min_length=1)
    description: str = ""
    file_path: Optional[str] = None


class CodePayload(BaseModel):
    content: str = Field(min_length=1)
    file_path: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)


class FixPayload(BaseModel):
    files: List[CodePayload] = Field(min_length=1)


class SimulationPayload(BaseModel):
    passed: bool
    error_message: Optional[str] = None
    stack_trace: Optional[str] = None
    execution_time_ms: float = 0.0


# ============================================================================
# UI OPTIMIZATION
# ============================================================================

class ComponentPayload(BaseModel):
    id: str
    type: str = Field(default="div", validation_alias=AliasChoices('type', 'component_type'))
    props: Dict[str, Any] = Field(default_factory=dict)
    children: List['ComponentPayload'] = Field(default_factory=list)
    annotations: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices('annotations', 'cognitive_annotations')
    )

    @model_validator(mode='after')
    def _ids_unique(self) -> 'ComponentPayload':
        seen = set()
        stack = [self]
        while stack:
            node = stack.pop()
            if node.id in seen:
                raise ValueError(f"duplicate component id {node.id!r}")
            seen.add(node.id)
            stack.extend(node.children)
        return self

    def to_tree(self) -> UIComponentTree:
        return UIComponentTree(
            id=self.id,
            type=self.type,
            props=dict(self.props),
            children=tuple(child.to_tree() for child in self.children),
            annotations=tuple(self.annotations)
        )


ComponentPayload.model_rebuild()


class EvaluationPayload(BaseModel):
    # Not bounded here: out-of-range scores are clamped, not rejected.
    score: float
    rationale: str = ""


class ImprovementPayload(BaseModel):
    principle: str
    estimated_score_delta: float = 0.0


class RecommendationPayload(BaseModel):
    priority: int = Field(ge=1)
    element_id: str
    change_type: str
    rationale: str = ""
    expected_improvement: List[ImprovementPayload] = Field(default_factory=list)


class RecommendationsPayload(BaseModel):
    recommendations: List[RecommendationPayload] = Field(default_factory=list)


class ViolationPayload(BaseModel):
    principle: CognitivePrinciple
    element_id: str
    violation_description: str
    severity: Severity = Severity.MEDIUM


class ViolationsPayload(BaseModel):
    violations: List[ViolationPayload] = Field(default_factory=list)


# ============================================================================
# FEEDBACK TRANSLATION
# ============================================================================

class EdgePayload(BaseModel):
    source: str
    target: str
    relationship: str = "causes"


class IssuePayload(BaseModel):
    type: IssueType
    severity: Severity
    affected_count: int = Field(default=0, ge=0)
    evidence: List[str] = Field(default_factory=list)


class CausalPayload(BaseModel):
    edges: List[EdgePayload] = Field(default_factory=list)
    issues: List[IssuePayload] = Field(default_factory=list)


class CriterionPayload(BaseModel):
    given: str
    when: str
    then: str
    priority: int = 1


class RequestPayload(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    acceptance_criteria: List[CriterionPayload] = Field(min_length=1)
    context_queries: List[str] = Field(default_factory=list)
    priority: str = "high"
