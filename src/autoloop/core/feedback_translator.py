# src/autoloop/core/feedback_translator.py
"""
Feedback Translator - telemetry analysis to issues and generation requests.

The reasoning graph is built locally from the analysis; the Oracle may add
causal edges between known nodes and propose extra issues. Root causes are
found by walking edges backward from blockers and anomalies.
"""
import json
import logging
from typing import Dict, List, Optional

from autoloop.api.client import GenerationOracle, GenerationOptions, OracleError
from autoloop.core.models import (
    AcceptanceCriterion, FeedbackAnalysis, GenerationRequest, Issue, IssueType, NodeCategory,
    ReasoningEdge, ReasoningGraph, ReasoningNode, Severity, TechnicalConstraints,
    TelemetryAnalysis
)
from autoloop.core.retry import RetryPolicy
from autoloop.core.schemas import CausalPayload, RequestPayload
from autoloop.core.structured import request_structured

logger = logging.getLogger(__name__)

PERFORMANCE_DWELL_MS = 10000.0

# Backward tracing starts from nodes of these categories
TRACED_CATEGORIES = (NodeCategory.CONVERSION_BLOCKER, NodeCategory.BEHAVIORAL_ANOMALY)


# ============================================================================
# SEVERITY RULES
# ============================================================================

def drop_off_severity(rate: float) -> Severity:
    if rate >= 0.5:
        return Severity.CRITICAL
    if rate >= 0.3:
        return Severity.HIGH
    if rate >= 0.15:
        return Severity.MEDIUM
    return Severity.LOW


def rage_click_severity(total_clicks: int) -> Severity:
    if total_clicks >= 20:
        return Severity.CRITICAL
    if total_clicks >= 10:
        return Severity.HIGH
    if total_clicks >= 5:
        return Severity.MEDIUM
    return Severity.LOW


def hesitation_severity(max_dwell_ms: float) -> Severity:
    if max_dwell_ms >= PERFORMANCE_DWELL_MS:
        return Severity.HIGH
    if max_dwell_ms >= 6000:
        return Severity.MEDIUM
    return Severity.LOW


def max_severity(severities: List[Severity]) -> Severity:
    return max(severities, key=lambda s: s.rank) if severities else Severity.LOW


# ============================================================================
# GRAPH
# ============================================================================

def build_reasoning_graph(analysis: TelemetryAnalysis) -> ReasoningGraph:
    """Deterministic nodes and edges from an analysis. Root causes not yet set."""
    patterns = analysis.behavioral_patterns
    graph = ReasoningGraph()

    for point in patterns.hesitation_points:
        element_id = point['elementId']
        graph.nodes.append(ReasoningNode(
            id=f"anomaly:hesitation:{element_id}",
            category=NodeCategory.BEHAVIORAL_ANOMALY,
            description=f"Users hesitate {point['avgDwellTime'] / 1000:.1f}s on {element_id}",
            element_id=element_id,
            weight=point['avgDwellTime']
        ))
        if point['avgDwellTime'] >= PERFORMANCE_DWELL_MS:
            graph.nodes.append(ReasoningNode(
                id=f"performance:{element_id}",
                category=NodeCategory.PERFORMANCE_ISSUE,
                description=f"{element_id} keeps users waiting over {PERFORMANCE_DWELL_MS / 1000:.0f}s",
                element_id=element_id,
                weight=point['avgDwellTime']
            ))

    for point in patterns.rage_clicks:
        element_id = point['elementId']
        graph.nodes.append(ReasoningNode(
            id=f"anomaly:rage:{element_id}",
            category=NodeCategory.BEHAVIORAL_ANOMALY,
            description=f"{point['clickCount']} frustrated clicks on {element_id}",
            element_id=element_id,
            weight=point['clickCount']
        ))

    for violation in analysis.cognitive_fitness_violations:
        graph.nodes.append(ReasoningNode(
            id=f"violation:{violation.principle.value}:{violation.element_id}",
            category=NodeCategory.PRINCIPLE_VIOLATION,
            description=violation.violation_description,
            element_id=violation.element_id,
            weight=violation.severity.rank + 1
        ))

    for point in patterns.drop_off_points:
        graph.nodes.append(ReasoningNode(
            id=f"blocker:{point['pagePath']}",
            category=NodeCategory.CONVERSION_BLOCKER,
            description=f"{point['dropOffRate']:.0%} of sessions drop off at {point['pagePath']}",
            weight=point['dropOffRate']
        ))

    _dedupe_nodes(graph)

    by_category: Dict[NodeCategory, List[ReasoningNode]] = {c: [] for c in NodeCategory}
    for node in graph.nodes:
        by_category[node.category].append(node)

    for violation in by_category[NodeCategory.PRINCIPLE_VIOLATION]:
        for anomaly in by_category[NodeCategory.BEHAVIORAL_ANOMALY]:
            if anomaly.element_id == violation.element_id:
                add_edge(graph, violation.id, anomaly.id, "causes")

    for blocker in by_category[NodeCategory.CONVERSION_BLOCKER]:
        for anomaly in by_category[NodeCategory.BEHAVIORAL_ANOMALY]:
            add_edge(graph, anomaly.id, blocker.id, "contributes_to")
        for performance in by_category[NodeCategory.PERFORMANCE_ISSUE]:
            add_edge(graph, performance.id, blocker.id, "contributes_to")

    return graph


def _dedupe_nodes(graph: ReasoningGraph):
    seen = set()
    unique = []
    for node in graph.nodes:
        if node.id not in seen:
            seen.add(node.id)
            unique.append(node)
    graph.nodes = unique


def add_edge(graph: ReasoningGraph, source: str, target: str, relationship: str) -> bool:
    """Add an edge between known nodes. Self-loops and duplicates are ignored."""
    if source == target or graph.has_edge(source, target):
        return False
    if graph.node(source) is None or graph.node(target) is None:
        return False
    graph.edges.append(ReasoningEdge(source=source, target=target, relationship=relationship))
    return True


def find_root_causes(graph: ReasoningGraph) -> List[str]:
    """Nodes without incoming edges reachable backward from blockers and anomalies."""
    roots = set()
    for start in graph.nodes:
        if start.category not in TRACED_CATEGORIES:
            continue
        visited = set()
        frontier = [start.id]
        while frontier:
            node_id = frontier.pop()
            if node_id in visited:
                continue
            visited.add(node_id)
            predecessors = graph.predecessors(node_id)
            if not predecessors:
                roots.add(node_id)
            frontier.extend(predecessors)

    return [n.id for n in graph.nodes if n.id in roots]


# ============================================================================
# ISSUES
# ============================================================================

def derive_issues(analysis: TelemetryAnalysis, graph: ReasoningGraph) -> List[Issue]:
    """Issues that follow directly from the analysis, one per kind of signal."""
    patterns = analysis.behavioral_patterns
    issues = []

    if patterns.rage_clicks:
        total = sum(p['clickCount'] for p in patterns.rage_clicks)
        issues.append(Issue(
            type=IssueType.USER_FRICTION,
            severity=rage_click_severity(total),
            affected_count=total,
            evidence=[f"anomaly:rage:{p['elementId']}" for p in patterns.rage_clicks]
        ))

    if patterns.hesitation_points:
        issues.append(Issue(
            type=IssueType.USER_FRICTION,
            severity=hesitation_severity(max(p['avgDwellTime'] for p in patterns.hesitation_points)),
            affected_count=len(patterns.hesitation_points),
            evidence=[f"anomaly:hesitation:{p['elementId']}" for p in patterns.hesitation_points]
        ))

    violations = analysis.cognitive_fitness_violations
    if violations:
        issues.append(Issue(
            type=IssueType.COGNITIVE_OVERLOAD,
            severity=max_severity([v.severity for v in violations]),
            affected_count=len(violations),
            evidence=[f"violation:{v.principle.value}:{v.element_id}" for v in violations]
        ))

    for point in patterns.drop_off_points:
        issues.append(Issue(
            type=IssueType.CONVERSION_BLOCKER,
            severity=drop_off_severity(point['dropOffRate']),
            affected_count=round(point['dropOffRate'] * analysis.session_count),
            evidence=[f"blocker:{point['pagePath']}"]
        ))

    performance = [n for n in graph.nodes if n.category == NodeCategory.PERFORMANCE_ISSUE]
    if performance:
        issues.append(Issue(
            type=IssueType.PERFORMANCE,
            severity=Severity.HIGH if max(n.weight for n in performance) >= 2 * PERFORMANCE_DWELL_MS
            else Severity.MEDIUM,
            affected_count=len(performance),
            evidence=[n.id for n in performance]
        ))

    return issues


class FeedbackTranslator:
    """Turns telemetry analyses into issues and, for urgent issues, a new request."""

    def __init__(self, oracle: GenerationOracle,
                 retry_policy: Optional[RetryPolicy] = None,
                 default_constraints: Optional[TechnicalConstraints] = None):
        self.oracle = oracle
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_constraints = default_constraints
        self._last: Optional[FeedbackAnalysis] = None

    async def translate(self, analysis: TelemetryAnalysis) -> FeedbackAnalysis:
        graph = build_reasoning_graph(analysis)
        issues = derive_issues(analysis, graph)

        oracle_issues = await self._enrich_graph(analysis, graph)
        issues.extend(i for i in oracle_issues if not self._duplicates(i, issues))

        graph.root_causes = find_root_causes(graph)
        logger.info(f"Reasoning graph: {len(graph.nodes)} nodes, {len(graph.edges)} edges, "
                    f"{len(graph.root_causes)} root causes; {len(issues)} issues")

        urgent = [i for i in issues if i.is_urgent]
        request = await self._generate_request(urgent, graph, analysis) if urgent else None

        self._last = FeedbackAnalysis(issues=issues, reasoning_graph=graph, generated_request=request)
        return self._last

    async def _enrich_graph(self, analysis: TelemetryAnalysis, graph: ReasoningGraph) -> List[Issue]:
        """Ask for extra causal edges and issues. Failure leaves the graph as is."""
        if not graph.nodes:
            return []

        prompt = f"""You are a feedback analyst reasoning over a graph of observations.

TELEMETRY ANALYSIS:
{json.dumps(analysis.to_dict(), indent=2)}

KNOWN NODES:
{json.dumps([n.to_dict() for n in graph.nodes], indent=2)}

KNOWN EDGES (source causes target):
{json.dumps([e.to_dict() for e in graph.edges], indent=2)}

1. Add causal edges between KNOWN node ids that the data supports. Do not invent nodes.
2. List any product issues the known edges miss.
   Types: user_friction, performance, accessibility, cognitive_overload, conversion_blocker
   Severity: low, medium, high, critical

OUTPUT FORMAT (JSON):
{{"edges": [{{"source": "...", "target": "...", "relationship": "causes"}}],
  "issues": [{{"type": "accessibility", "severity": "medium", "affected_count": 0, "evidence": ["node id"]}}]}}
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, CausalPayload, self.retry_policy,
                GenerationOptions(temperature=0.3), description="causal reasoning"
            )
        except OracleError as e:
            logger.warning(f"Causal reasoning failed, using derived issues only: {e}")
            return []

        added = sum(add_edge(graph, e.source, e.target, e.relationship) for e in payload.edges)
        if added < len(payload.edges):
            logger.debug(f"Ignored {len(payload.edges) - added} edges to unknown or duplicate nodes")

        return [
            Issue(type=i.type, severity=i.severity, affected_count=i.affected_count, evidence=i.evidence)
            for i in payload.issues
        ]

    def _duplicates(self, issue: Issue, existing: List[Issue]) -> bool:
        return any(e.type == issue.type and set(issue.evidence) <= set(e.evidence) and issue.evidence
                   for e in existing)

    async def _generate_request(self, urgent: List[Issue], graph: ReasoningGraph,
                                analysis: TelemetryAnalysis) -> Optional[GenerationRequest]:
        issue_lines = "\n".join(
            f"- {i.type.value} ({i.severity.value}, {i.affected_count} affected): {', '.join(i.evidence)}"
            for i in urgent
        )
        root_causes = "\n".join(
            f"- {node.id}: {node.description}"
            for node in (graph.node(r) for r in graph.root_causes) if node
        )
        prompt = f"""You are a product manager. Write a user story that fixes these issues.

CRITICAL ISSUES:
{issue_lines}

ROOT CAUSES:
{root_causes or '- none identified'}

BEHAVIORAL PATTERNS:
{json.dumps(analysis.behavioral_patterns.to_dict(), indent=2)}

OUTPUT FORMAT (JSON):
{{"title": "Fix ...", "description": "...",
  "acceptance_criteria": [{{"given": "User is on ...", "when": "User ...", "then": "System should ...", "priority": 1}}],
  "context_queries": ["relevant existing code"], "priority": "high"}}
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, RequestPayload, self.retry_policy,
                GenerationOptions(temperature=0.5), description="request generation"
            )
        except OracleError as e:
            logger.warning(f"Request generation failed; issues recorded without a request: {e}")
            return None

        request = GenerationRequest(
            title=payload.title,
            description=payload.description,
            acceptance_criteria=[
                AcceptanceCriterion(given=c.given, when=c.when, then=c.then, priority=c.priority)
                for c in payload.acceptance_criteria
            ],
            context_queries=payload.context_queries,
            technical_constraints=self.default_constraints,
            priority=max_severity([i.severity for i in urgent]).value,
            source_trigger="feedback_translator"
        )
        logger.info(f"Generated request '{request.title}' from {len(urgent)} urgent issues")
        return request

    def get_last_analysis(self) -> Optional[FeedbackAnalysis]:
        return self._last

    def reset(self):
        self._last = None
