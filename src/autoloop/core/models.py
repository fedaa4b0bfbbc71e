# src/autoloop/core/models.py
"""
Data models for the generation and optimization loop.

All sync - no async needed for data structures. These represent the requests,
engine states, telemetry and audit records that flow between the workflow
engine, the UI optimizer, the feedback translator and the orchestrator.

Designed for JSON serialization with to_dict()/from_dict() methods.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple, Union, Iterator
from enum import Enum
from datetime import datetime
from pathlib import Path
import json
import uuid


def new_id(prefix: str = "") -> str:
    """Short unique identifier, optionally prefixed."""
    token = uuid.uuid4().hex[:12]
    return f"{prefix}_{token}" if prefix else token


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return min(1.0, max(0.0, float(value)))


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ============================================================================
# ENUMS
# ============================================================================

class WorkflowPhase(str, Enum):
    """Phases of the test-driven workflow, in order."""
    USER_STORY = "user_story"
    RAG_CONTEXT = "rag_context"
    TEST_GENERATION = "test_generation"
    CODE_GENERATION = "code_generation"
    SELF_HEALING = "self_healing"
    COMPLETE = "complete"

    @property
    def order(self) -> int:
        return list(WorkflowPhase).index(self)


class FinalStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class QueryType(str, Enum):
    CODE_SEARCH = "code_search"
    DOCUMENTATION = "documentation"
    API_REFERENCE = "api_reference"
    PATTERN_SEARCH = "pattern_search"
    DEPENDENCY_GRAPH = "dependency_graph"


class SynthesisStrategy(str, Enum):
    """How parallel sub-query results are merged into one context."""
    CONCATENATE = "concatenate"
    SUMMARIZE = "summarize"
    GRAPH_BASED = "graph_based"
    HIERARCHICAL = "hierarchical"


class CognitivePrinciple(str, Enum):
    COGNITIVE_LOAD = "cognitive_load"
    HICKS_LAW = "hicks_law"
    FITTS_LAW = "fitts_law"
    MILLER_LAW = "miller_law"
    GESTALT_PROXIMITY = "gestalt_proximity"
    PEAK_END_RULE = "peak_end_rule"
    SERIAL_POSITION = "serial_position"
    RECOGNITION_VS_RECALL = "recognition_vs_recall"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class IssueType(str, Enum):
    USER_FRICTION = "user_friction"
    PERFORMANCE = "performance"
    ACCESSIBILITY = "accessibility"
    COGNITIVE_OVERLOAD = "cognitive_overload"
    CONVERSION_BLOCKER = "conversion_blocker"


class NodeCategory(str, Enum):
    """Category of an observation in the reasoning graph."""
    BEHAVIORAL_ANOMALY = "behavioral_anomaly"
    PRINCIPLE_VIOLATION = "principle_violation"
    CONVERSION_BLOCKER = "conversion_blocker"
    PERFORMANCE_ISSUE = "performance_issue"


class OptimizerStatus(str, Enum):
    GENERATING = "generating"
    DEPLOYED = "deployed"
    MONITORING = "monitoring"
    OPTIMIZING = "optimizing"


class DeploymentStatus(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    ROLLBACK = "rollback"


class ABWinner(str, Enum):
    A = "a"
    B = "b"
    INCONCLUSIVE = "inconclusive"


# ============================================================================
# GENERATION REQUESTS
# ============================================================================

@dataclass
class AcceptanceCriterion:
    """A given/when/then statement the implementation must satisfy."""
    given: str
    when: str
    then: str
    priority: int = 1
    id: str = field(default_factory=lambda: new_id("ac"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'given': self.given,
            'when': self.when,
            'then': self.then,
            'priority': self.priority
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AcceptanceCriterion':
        return cls(
            id=data.get('id') or new_id("ac"),
            given=data['given'],
            when=data['when'],
            then=data['then'],
            priority=int(data.get('priority', 1))
        )


@dataclass
class TechnicalConstraints:
    language: Optional[str] = None
    framework: Optional[str] = None
    test_framework: Optional[str] = None
    coding_standards: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'language': self.language,
            'framework': self.framework,
            'test_framework': self.test_framework,
            'coding_standards': self.coding_standards
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TechnicalConstraints':
        return cls(
            language=data.get('language'),
            framework=data.get('framework'),
            test_framework=data.get('test_framework'),
            coding_standards=list(data.get('coding_standards') or [])
        )


@dataclass
class GenerationRequest:
    """An intent plus acceptance criteria; consumed once per workflow run."""
    title: str
    description: str
    acceptance_criteria: List[AcceptanceCriterion]
    context_queries: List[str] = field(default_factory=list)
    technical_constraints: Optional[TechnicalConstraints] = None
    priority: str = "medium"  # low, medium, high, critical
    source_trigger: str = "manual"  # manual, feedback_translator, scheduled
    id: str = field(default_factory=lambda: new_id("request"))
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'acceptance_criteria': [c.to_dict() for c in self.acceptance_criteria],
            'context_queries': self.context_queries,
            'technical_constraints': self.technical_constraints.to_dict() if self.technical_constraints else None,
            'priority': self.priority,
            'source_trigger': self.source_trigger,
            'created_at': self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GenerationRequest':
        constraints = data.get('technical_constraints')
        return cls(
            id=data.get('id') or new_id("request"),
            title=data['title'],
            description=data.get('description', ''),
            acceptance_criteria=[AcceptanceCriterion.from_dict(c) for c in data.get('acceptance_criteria', [])],
            context_queries=list(data.get('context_queries') or []),
            technical_constraints=TechnicalConstraints.from_dict(constraints) if constraints else None,
            priority=data.get('priority', 'medium'),
            source_trigger=data.get('source_trigger', 'manual'),
            created_at=_parse_dt(data.get('created_at')) or datetime.now()
        )


# ============================================================================
# QUERY PLANNING
# ============================================================================

@dataclass
class CodeContext:
    """A retrieved piece of code with its relevance to a query."""
    file_path: str
    content: str
    relevance: float = 0.0
    dependencies: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.relevance = clamp_unit(self.relevance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file_path': self.file_path,
            'content': self.content,
            'relevance': self.relevance,
            'dependencies': self.dependencies,
            'exports': self.exports
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CodeContext':
        return cls(
            file_path=data['file_path'],
            content=data.get('content', ''),
            relevance=data.get('relevance', 0.0),
            dependencies=list(data.get('dependencies') or []),
            exports=list(data.get('exports') or [])
        )


@dataclass
class SubQuery:
    query_text: str
    query_type: QueryType = QueryType.CODE_SEARCH
    filters: Dict[str, Any] = field(default_factory=dict)
    query_id: str = field(default_factory=lambda: new_id("query"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query_id': self.query_id,
            'query_text': self.query_text,
            'query_type': self.query_type.value,
            'filters': self.filters
        }


@dataclass
class QueryPlan:
    original_intent: str
    sub_queries: List[SubQuery]
    synthesis_strategy: SynthesisStrategy = SynthesisStrategy.CONCATENATE
    plan_id: str = field(default_factory=lambda: new_id("plan"))
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'plan_id': self.plan_id,
            'original_intent': self.original_intent,
            'sub_queries': [q.to_dict() for q in self.sub_queries],
            'synthesis_strategy': self.synthesis_strategy.value,
            'is_fallback': self.is_fallback
        }


@dataclass
class QueryResult:
    plan: QueryPlan
    query_results: Dict[str, List[CodeContext]]  # query_id -> contexts
    synthesized_context: str
    confidence_score: float

    def all_contexts(self) -> List[CodeContext]:
        return [ctx for contexts in self.query_results.values() for ctx in contexts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'plan': self.plan.to_dict(),
            'query_results': {k: [c.to_dict() for c in v] for k, v in self.query_results.items()},
            'synthesized_context': self.synthesized_context,
            'confidence_score': self.confidence_score
        }


# ============================================================================
# WORKFLOW ENGINE STATE
# ============================================================================

@dataclass
class ContextResult:
    """Context gathered for one declared context query of a workflow."""
    query: str
    results: List[CodeContext] = field(default_factory=list)
    relevance_score: float = 0.0
    synthesized_context: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'results': [c.to_dict() for c in self.results],
            'relevance_score': self.relevance_score,
            'synthesized_context': self.synthesized_context
        }


@dataclass
class GeneratedTest:
    acceptance_criterion_id: str
    test_framework: str
    file_path: str
    test_code: str
    description: str
    status: str = "generated"  # generated, passing, failing, error
    id: str = field(default_factory=lambda: new_id("test"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'acceptance_criterion_id': self.acceptance_criterion_id,
            'test_framework': self.test_framework,
            'file_path': self.file_path,
            'test_code': self.test_code,
            'description': self.description,
            'status': self.status
        }


@dataclass
class GeneratedCode:
    file_path: str
    content: str
    tests_satisfied: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("code"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'file_path': self.file_path,
            'content': self.content,
            'tests_satisfied': self.tests_satisfied,
            'dependencies': self.dependencies
        }


@dataclass
class TestResult:
    __test__ = False  # not a pytest class

    test_id: str
    passed: bool
    error_message: Optional[str] = None
    stack_trace: Optional[str] = None
    execution_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'test_id': self.test_id,
            'passed': self.passed,
            'error_message': self.error_message,
            'stack_trace': self.stack_trace,
            'execution_time_ms': self.execution_time_ms
        }


@dataclass
class HealingIteration:
    """One bounded attempt to fix failing tests by regenerating the code."""
    iteration: int
    test_results: List[TestResult]
    error_analysis: Optional[str] = None
    proposed_fix: List[GeneratedCode] = field(default_factory=list)
    applied: bool = False

    @property
    def failing_tests(self) -> List[TestResult]:
        return [r for r in self.test_results if not r.passed]

    @property
    def converged(self) -> bool:
        return not self.failing_tests

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iteration': self.iteration,
            'test_results': [r.to_dict() for r in self.test_results],
            'failing_tests': [r.to_dict() for r in self.failing_tests],
            'error_analysis': self.error_analysis,
            'proposed_fix': [c.to_dict() for c in self.proposed_fix],
            'applied': self.applied
        }


@dataclass
class WorkflowState:
    """State of one workflow run. Owned exclusively by the engine running it."""
    request: GenerationRequest
    phase: WorkflowPhase = WorkflowPhase.USER_STORY
    phase_history: List[WorkflowPhase] = field(default_factory=lambda: [WorkflowPhase.USER_STORY])
    context_results: List[ContextResult] = field(default_factory=list)
    generated_tests: List[GeneratedTest] = field(default_factory=list)
    generated_code: List[GeneratedCode] = field(default_factory=list)
    test_results: List[TestResult] = field(default_factory=list)
    healing_iterations: List[HealingIteration] = field(default_factory=list)
    final_status: FinalStatus = FinalStatus.PENDING
    failed_phase: Optional[WorkflowPhase] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def advance(self, phase: WorkflowPhase) -> None:
        """Move to a later phase. Phases never regress."""
        if phase.order < self.phase.order:
            raise ValueError(f"Cannot move workflow back from {self.phase.value} to {phase.value}")
        if phase != self.phase:
            self.phase = phase
            self.phase_history.append(phase)

    @property
    def passing_tests(self) -> int:
        return sum(1 for r in self.test_results if r.passed)

    @property
    def error_rate(self) -> float:
        """1 - passing/total; a run with no tests has verified nothing."""
        total = len(self.generated_tests)
        if total == 0:
            return 1.0
        return clamp_unit(1.0 - self.passing_tests / total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request': self.request.to_dict(),
            'phase': self.phase.value,
            'phase_history': [p.value for p in self.phase_history],
            'context_results': [c.to_dict() for c in self.context_results],
            'generated_tests': [t.to_dict() for t in self.generated_tests],
            'generated_code': [c.to_dict() for c in self.generated_code],
            'test_results': [r.to_dict() for r in self.test_results],
            'healing_iterations': [h.to_dict() for h in self.healing_iterations],
            'final_status': self.final_status.value,
            'failed_phase': self.failed_phase.value if self.failed_phase else None,
            'error': self.error,
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }


# ============================================================================
# FITNESS FUNCTION & UI
# ============================================================================

@dataclass(frozen=True)
class FitnessPrinciple:
    principle: CognitivePrinciple
    weight: float
    target_metric: str
    target_value: float

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError(f"Weight for {self.principle.value} must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principle': self.principle.value,
            'weight': self.weight,
            'target_metric': self.target_metric,
            'target_value': self.target_value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FitnessPrinciple':
        return cls(
            principle=CognitivePrinciple(data['principle']),
            weight=float(data.get('weight', 1.0)),
            target_metric=data.get('target_metric', ''),
            target_value=float(data.get('target_value', 1.0))
        )


@dataclass(frozen=True)
class FitnessFunction:
    """Ordered, immutable set of weighted principles."""
    principles: Tuple[FitnessPrinciple, ...]

    def __post_init__(self):
        if not self.principles:
            raise ValueError("Fitness function needs at least one principle")
        if self.total_weight <= 0:
            raise ValueError("Fitness function weights must sum to a positive value")

    @property
    def total_weight(self) -> float:
        return sum(p.weight for p in self.principles)

    def to_dict(self) -> Dict[str, Any]:
        return {'principles': [p.to_dict() for p in self.principles]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FitnessFunction':
        return cls(principles=tuple(FitnessPrinciple.from_dict(p) for p in data.get('principles', [])))


@dataclass
class Persona:
    name: str
    demographics: Dict[str, Any] = field(default_factory=dict)
    pain_points: List[str] = field(default_factory=list)
    motivations: List[str] = field(default_factory=list)
    goals: List[str] = field(default_factory=list)
    behavioral_patterns: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("persona"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'demographics': self.demographics,
            'pain_points': self.pain_points,
            'motivations': self.motivations,
            'goals': self.goals,
            'behavioral_patterns': self.behavioral_patterns
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Persona':
        return cls(
            id=data.get('id') or new_id("persona"),
            name=data.get('name', 'Unnamed persona'),
            demographics=dict(data.get('demographics') or {}),
            pain_points=list(data.get('pain_points') or []),
            motivations=list(data.get('motivations') or []),
            goals=list(data.get('goals') or []),
            behavioral_patterns=dict(data.get('behavioral_patterns') or {})
        )


@dataclass
class OptimizerMetaprompt:
    objective: str
    business_objective: str
    target_persona: Union[Persona, str]  # str = path to a persona YAML file
    fitness_function: FitnessFunction
    technical_constraints: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("metaprompt"))

    def to_dict(self) -> Dict[str, Any]:
        persona = self.target_persona
        return {
            'id': self.id,
            'objective': self.objective,
            'business_objective': self.business_objective,
            'target_persona': persona.to_dict() if isinstance(persona, Persona) else persona,
            'fitness_function': self.fitness_function.to_dict(),
            'technical_constraints': self.technical_constraints
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OptimizerMetaprompt':
        persona = data.get('target_persona', 'default')
        return cls(
            id=data.get('id') or new_id("metaprompt"),
            objective=data.get('objective', 'minimize_friction'),
            business_objective=data.get('business_objective', ''),
            target_persona=Persona.from_dict(persona) if isinstance(persona, dict) else str(persona),
            fitness_function=FitnessFunction.from_dict(data['fitness_function']),
            technical_constraints=dict(data.get('technical_constraints') or {})
        )


@dataclass(frozen=True)
class UIComponentTree:
    """Recursive UI hypothesis. Replaced wholesale, never mutated in place."""
    id: str
    type: str
    props: Dict[str, Any] = field(default_factory=dict)
    children: Tuple['UIComponentTree', ...] = ()
    annotations: Tuple[Dict[str, Any], ...] = ()

    def walk(self) -> Iterator['UIComponentTree']:
        yield self
        for child in self.children:
            yield from child.walk()

    def ids(self) -> List[str]:
        return [node.id for node in self.walk()]

    def node_count(self) -> int:
        return sum(1 for _ in self.walk())

    def duplicate_ids(self) -> List[str]:
        seen, duplicates = set(), []
        for node_id in self.ids():
            if node_id in seen and node_id not in duplicates:
                duplicates.append(node_id)
            seen.add(node_id)
        return duplicates

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'props': self.props,
            'children': [c.to_dict() for c in self.children],
            'annotations': list(self.annotations)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UIComponentTree':
        """Create from dictionary. Raises ValueError on duplicate ids."""
        tree = cls._build(data)
        duplicates = tree.duplicate_ids()
        if duplicates:
            raise ValueError(f"Duplicate component ids in UI tree: {', '.join(duplicates)}")
        return tree

    @classmethod
    def _build(cls, data: Dict[str, Any]) -> 'UIComponentTree':
        return cls(
            id=str(data['id']),
            type=data.get('type') or data.get('component_type') or 'div',
            props=dict(data.get('props') or {}),
            children=tuple(cls._build(c) for c in data.get('children') or []),
            annotations=tuple(data.get('annotations') or data.get('cognitive_annotations') or [])
        )


# ============================================================================
# TELEMETRY
# ============================================================================

@dataclass
class TelemetryEvent:
    """A single recorded user interaction tied to a session."""
    session_id: str
    sequence_number: int
    event_type: str
    page_path: str
    element_id: Optional[str] = None
    element_type: Optional[str] = None
    user_id: Optional[str] = None
    duration: Optional[float] = None  # ms, e.g. hover or dwell time
    value: Optional[Any] = None
    previous_event_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("event"))
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'sessionId': self.session_id,
            'sequenceNumber': self.sequence_number,
            'eventType': self.event_type,
            'elementId': self.element_id,
            'elementType': self.element_type,
            'pagePath': self.page_path,
            'userId': self.user_id,
            'duration': self.duration,
            'value': self.value,
            'previousEventId': self.previous_event_id,
            'context': self.context
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TelemetryEvent':
        return cls(
            id=data.get('id') or new_id("event"),
            timestamp=_parse_dt(data.get('timestamp')) or datetime.now(),
            session_id=data['sessionId'],
            sequence_number=int(data['sequenceNumber']),
            event_type=data['eventType'],
            element_id=data.get('elementId'),
            element_type=data.get('elementType'),
            page_path=data.get('pagePath', '/'),
            user_id=data.get('userId'),
            duration=data.get('duration'),
            value=data.get('value'),
            previous_event_id=data.get('previousEventId'),
            context=dict(data.get('context') or {})
        )


@dataclass
class BehavioralPatterns:
    hesitation_points: List[Dict[str, Any]] = field(default_factory=list)  # {elementId, avgDwellTime}
    rage_clicks: List[Dict[str, Any]] = field(default_factory=list)  # {elementId, clickCount}
    drop_off_points: List[Dict[str, Any]] = field(default_factory=list)  # {pagePath, dropOffRate}
    successful_conversions: List[Dict[str, Any]] = field(default_factory=list)  # {goal, completionRate}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hesitation_points': self.hesitation_points,
            'rage_clicks': self.rage_clicks,
            'drop_off_points': self.drop_off_points,
            'successful_conversions': self.successful_conversions
        }


@dataclass
class PrincipleViolation:
    principle: CognitivePrinciple
    element_id: str
    violation_description: str
    severity: Severity = Severity.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principle': self.principle.value,
            'element_id': self.element_id,
            'violation_description': self.violation_description,
            'severity': self.severity.value
        }


@dataclass
class Recommendation:
    """A proposed UI change. Lower priority number means more important."""
    priority: int
    element_id: str
    change_type: str  # reposition, resize, remove, simplify, reword, add_affordance
    rationale: str
    expected_improvement: List[Dict[str, Any]] = field(default_factory=list)  # {principle, estimated_score_delta}
    id: str = field(default_factory=lambda: new_id("rec"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'priority': self.priority,
            'element_id': self.element_id,
            'change_type': self.change_type,
            'rationale': self.rationale,
            'expected_improvement': self.expected_improvement
        }


@dataclass
class TelemetryAnalysis:
    behavioral_patterns: BehavioralPatterns
    cognitive_fitness_violations: List[PrincipleViolation] = field(default_factory=list)
    recommended_changes: List[Recommendation] = field(default_factory=list)
    session_count: int = 0
    event_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_count': self.session_count,
            'event_count': self.event_count,
            'behavioral_patterns': self.behavioral_patterns.to_dict(),
            'cognitive_fitness_violations': [v.to_dict() for v in self.cognitive_fitness_violations],
            'recommended_changes': [r.to_dict() for r in self.recommended_changes]
        }


@dataclass(frozen=True)
class OptimizationRecord:
    iteration: int
    recommendations_applied: Tuple[Recommendation, ...]
    fitness_before: float
    fitness_after: float
    accepted: bool
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iteration': self.iteration,
            'timestamp': self.timestamp.isoformat(),
            'recommendations_applied': [r.to_dict() for r in self.recommendations_applied],
            'fitness_before': self.fitness_before,
            'fitness_after': self.fitness_after,
            'accepted': self.accepted
        }


@dataclass
class ABTestResult:
    variant_a: Dict[str, Any]  # {ui, fitness_score, session_count}
    variant_b: Dict[str, Any]
    winner: ABWinner
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        def variant(v: Dict[str, Any]) -> Dict[str, Any]:
            return {
                'ui': v['ui'].to_dict(),
                'fitness_score': v['fitness_score'],
                'session_count': v['session_count']
            }

        return {
            'variant_a': variant(self.variant_a),
            'variant_b': variant(self.variant_b),
            'winner': self.winner.value,
            'confidence': self.confidence
        }


@dataclass
class OptimizerState:
    metaprompt: OptimizerMetaprompt
    current_ui: UIComponentTree
    current_fitness_score: float = 0.0
    telemetry_sessions: List[str] = field(default_factory=list)
    telemetry_analysis: Optional[TelemetryAnalysis] = None
    optimization_history: List[OptimizationRecord] = field(default_factory=list)
    ab_test_results: List[ABTestResult] = field(default_factory=list)
    status: OptimizerStatus = OptimizerStatus.GENERATING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metaprompt': self.metaprompt.to_dict(),
            'current_ui': self.current_ui.to_dict(),
            'telemetry_sessions': list(self.telemetry_sessions),
            'telemetry_analysis': self.telemetry_analysis.to_dict() if self.telemetry_analysis else None,
            'optimization_history': [r.to_dict() for r in self.optimization_history],
            'ab_test_results': [r.to_dict() for r in self.ab_test_results],
            'current_fitness_score': self.current_fitness_score,
            'status': self.status.value
        }


# ============================================================================
# FEEDBACK TRANSLATION
# ============================================================================

@dataclass
class ReasoningNode:
    id: str
    category: NodeCategory
    description: str
    element_id: Optional[str] = None
    weight: float = 0.0  # magnitude of the observation, category-specific

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'category': self.category.value,
            'description': self.description,
            'element_id': self.element_id,
            'weight': self.weight
        }


@dataclass
class ReasoningEdge:
    """source causes (or contributes to) target."""
    source: str
    target: str
    relationship: str = "causes"

    def to_dict(self) -> Dict[str, Any]:
        return {'source': self.source, 'target': self.target, 'relationship': self.relationship}


@dataclass
class ReasoningGraph:
    nodes: List[ReasoningNode] = field(default_factory=list)
    edges: List[ReasoningEdge] = field(default_factory=list)
    root_causes: List[str] = field(default_factory=list)

    def node(self, node_id: str) -> Optional[ReasoningNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def predecessors(self, node_id: str) -> List[str]:
        return [e.source for e in self.edges if e.target == node_id]

    def has_edge(self, source: str, target: str) -> bool:
        return any(e.source == source and e.target == target for e in self.edges)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [n.to_dict() for n in self.nodes],
            'edges': [e.to_dict() for e in self.edges],
            'root_causes': self.root_causes
        }


@dataclass
class Issue:
    type: IssueType
    severity: Severity
    affected_count: int
    evidence: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("issue"))

    @property
    def is_urgent(self) -> bool:
        return self.severity in (Severity.HIGH, Severity.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'severity': self.severity.value,
            'affected_count': self.affected_count,
            'evidence': self.evidence
        }


@dataclass
class FeedbackAnalysis:
    issues: List[Issue]
    reasoning_graph: ReasoningGraph
    generated_request: Optional[GenerationRequest] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'issues': [i.to_dict() for i in self.issues],
            'reasoning_graph': self.reasoning_graph.to_dict(),
            'generated_request': self.generated_request.to_dict() if self.generated_request else None
        }


# ============================================================================
# CLOSED LOOP
# ============================================================================

@dataclass(frozen=True)
class ProductMetrics:
    user_delight: float = 0.0
    conversion_rate: float = 0.0
    error_rate: float = 0.0
    performance_score: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            'user_delight': self.user_delight,
            'conversion_rate': self.conversion_rate,
            'error_rate': self.error_rate,
            'performance_score': self.performance_score
        }


@dataclass(frozen=True)
class EvolutionRecord:
    iteration: int
    changes_made: Tuple[str, ...]
    metrics_before: ProductMetrics
    metrics_after: ProductMetrics
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iteration': self.iteration,
            'timestamp': self.timestamp.isoformat(),
            'changes_made': list(self.changes_made),
            'metrics_before': self.metrics_before.to_dict(),
            'metrics_after': self.metrics_after.to_dict()
        }


@dataclass
class LoopState:
    loop_iteration: int = 0
    deployment_status: DeploymentStatus = DeploymentStatus.DEVELOPMENT
    product_metrics: ProductMetrics = field(default_factory=ProductMetrics)
    workflow_state: Optional[WorkflowState] = None
    optimizer_state: Optional[OptimizerState] = None
    feedback_analysis: Optional[FeedbackAnalysis] = None
    evolution_history: List[EvolutionRecord] = field(default_factory=list)
    failed_iterations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loop_iteration': self.loop_iteration,
            'deployment_status': self.deployment_status.value,
            'product_metrics': self.product_metrics.to_dict(),
            'workflow_state': self.workflow_state.to_dict() if self.workflow_state else None,
            'optimizer_state': self.optimizer_state.to_dict() if self.optimizer_state else None,
            'feedback_analysis': self.feedback_analysis.to_dict() if self.feedback_analysis else None,
            'evolution_history': [r.to_dict() for r in self.evolution_history],
            'failed_iterations': list(self.failed_iterations)
        }


# ============================================================================
# UTILITY FUNCTIONS FOR SERIALIZATION
# ============================================================================

class EnhancedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles enums, dates, paths and models."""

    def default(self, obj):
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Path):
            return str(obj)
        if hasattr(obj, 'to_dict'):
            return obj.to_dict()
        return super().default(obj)


def save_model_to_json(model: Any, filepath: Path) -> None:
    """Save any model to JSON file."""
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(model, f, cls=EnhancedJSONEncoder, indent=2)
