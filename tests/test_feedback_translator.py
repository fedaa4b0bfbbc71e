from autoloop.api.client import OracleAPIError
from autoloop.core.feedback_translator import (
    FeedbackTranslator, add_edge, build_reasoning_graph, drop_off_severity, find_root_causes,
    hesitation_severity, rage_click_severity
)
from autoloop.core.models import (
    BehavioralPatterns, CognitivePrinciple, IssueType, PrincipleViolation, Severity,
    TechnicalConstraints, TelemetryAnalysis
)

from scripted import CAUSAL, REQUEST_GEN

REQUEST = {
    "title": "Fix checkout payment friction",
    "description": "Make the pay button respond immediately.",
    "acceptance_criteria": [
        {"given": "User is on /checkout", "when": "User taps Pay", "then": "System should confirm within 1s"}
    ],
    "context_queries": ["payment button handler"],
    "priority": "low",
}


def checkout_analysis(drop_off=0.6, sessions=10):
    return TelemetryAnalysis(
        behavioral_patterns=BehavioralPatterns(
            hesitation_points=[{'elementId': 'pay', 'avgDwellTime': 12000.0}],
            rage_clicks=[{'elementId': 'pay', 'clickCount': 6}],
            drop_off_points=[{'pagePath': '/checkout', 'dropOffRate': drop_off}],
        ),
        cognitive_fitness_violations=[
            PrincipleViolation(CognitivePrinciple.HICKS_LAW, "pay", "Too many payment options", Severity.HIGH)
        ],
        session_count=sessions,
    )


def test_severity_thresholds():
    assert drop_off_severity(0.5) == Severity.CRITICAL
    assert drop_off_severity(0.3) == Severity.HIGH
    assert drop_off_severity(0.15) == Severity.MEDIUM
    assert drop_off_severity(0.1) == Severity.LOW
    assert rage_click_severity(20) == Severity.CRITICAL
    assert rage_click_severity(10) == Severity.HIGH
    assert rage_click_severity(5) == Severity.MEDIUM
    assert rage_click_severity(4) == Severity.LOW
    assert hesitation_severity(10000) == Severity.HIGH
    assert hesitation_severity(6000) == Severity.MEDIUM
    assert hesitation_severity(3000) == Severity.LOW


def test_reasoning_graph_links_observations():
    graph = build_reasoning_graph(checkout_analysis())

    assert [n.id for n in graph.nodes] == [
        "anomaly:hesitation:pay",
        "performance:pay",
        "anomaly:rage:pay",
        "violation:hicks_law:pay",
        "blocker:/checkout",
    ]
    edges = {(e.source, e.target, e.relationship) for e in graph.edges}
    assert edges == {
        ("violation:hicks_law:pay", "anomaly:hesitation:pay", "causes"),
        ("violation:hicks_law:pay", "anomaly:rage:pay", "causes"),
        ("anomaly:hesitation:pay", "blocker:/checkout", "contributes_to"),
        ("anomaly:rage:pay", "blocker:/checkout", "contributes_to"),
        ("performance:pay", "blocker:/checkout", "contributes_to"),
    }


def test_root_causes_are_traced_backward():
    graph = build_reasoning_graph(checkout_analysis())

    assert find_root_causes(graph) == ["performance:pay", "violation:hicks_law:pay"]


def test_edges_only_join_distinct_known_nodes():
    graph = build_reasoning_graph(checkout_analysis())
    count = len(graph.edges)

    assert not add_edge(graph, "performance:pay", "performance:pay", "causes")
    assert not add_edge(graph, "performance:pay", "ghost", "causes")
    assert not add_edge(graph, "anomaly:rage:pay", "blocker:/checkout", "causes")
    assert add_edge(graph, "performance:pay", "anomaly:hesitation:pay", "causes")
    assert len(graph.edges) == count + 1


async def test_urgent_issues_produce_a_request(oracle, policy):
    constraints = TechnicalConstraints(language="typescript", test_framework="jest")
    translator = FeedbackTranslator(oracle, policy, default_constraints=constraints)
    oracle.on(CAUSAL, {"edges": [], "issues": []})
    oracle.on(REQUEST_GEN, REQUEST)

    feedback = await translator.translate(checkout_analysis())

    by_type = {}
    for issue in feedback.issues:
        by_type.setdefault(issue.type, []).append(issue)
    assert by_type[IssueType.CONVERSION_BLOCKER][0].severity == Severity.CRITICAL
    assert by_type[IssueType.CONVERSION_BLOCKER][0].affected_count == 6
    assert by_type[IssueType.COGNITIVE_OVERLOAD][0].severity == Severity.HIGH
    assert by_type[IssueType.PERFORMANCE][0].evidence == ["performance:pay"]

    request = feedback.generated_request
    assert request.title == "Fix checkout payment friction"
    assert request.source_trigger == "feedback_translator"
    assert request.priority == "critical"
    assert request.technical_constraints == constraints
    assert len(request.acceptance_criteria) == 1
    assert translator.get_last_analysis() is feedback


async def test_no_request_without_urgent_issues(oracle, policy):
    translator = FeedbackTranslator(oracle, policy)
    oracle.on(CAUSAL, {"edges": [], "issues": []})
    analysis = TelemetryAnalysis(
        behavioral_patterns=BehavioralPatterns(drop_off_points=[{'pagePath': '/cart', 'dropOffRate': 0.2}]),
        session_count=5,
    )

    feedback = await translator.translate(analysis)

    assert [i.severity for i in feedback.issues] == [Severity.MEDIUM]
    assert feedback.generated_request is None
    assert oracle.count(REQUEST_GEN) == 0


async def test_oracle_edges_and_issues_are_merged(oracle, policy):
    translator = FeedbackTranslator(oracle, policy)
    oracle.on(CAUSAL, {
        "edges": [
            {"source": "performance:pay", "target": "anomaly:rage:pay", "relationship": "causes"},
            {"source": "invented:node", "target": "blocker:/checkout"},
        ],
        "issues": [
            {"type": "accessibility", "severity": "medium", "affected_count": 2, "evidence": ["anomaly:rage:pay"]},
            {"type": "performance", "severity": "high", "evidence": ["performance:pay"]},
        ],
    })
    oracle.on(REQUEST_GEN, REQUEST)

    feedback = await translator.translate(checkout_analysis())

    graph = feedback.reasoning_graph
    assert graph.has_edge("performance:pay", "anomaly:rage:pay")
    assert graph.node("invented:node") is None
    assert graph.root_causes == ["performance:pay", "violation:hicks_law:pay"]
    types = [i.type for i in feedback.issues]
    assert types.count(IssueType.ACCESSIBILITY) == 1
    # Duplicate of the derived performance issue
    assert types.count(IssueType.PERFORMANCE) == 1


async def test_oracle_failures_degrade_gracefully(oracle, policy):
    translator = FeedbackTranslator(oracle, policy)
    oracle.on(CAUSAL, OracleAPIError("down"))
    oracle.on(REQUEST_GEN, {"title": "No criteria", "acceptance_criteria": []})

    feedback = await translator.translate(checkout_analysis())

    assert feedback.issues
    assert feedback.generated_request is None


async def test_empty_analysis_yields_no_issues(oracle, policy):
    translator = FeedbackTranslator(oracle, policy)

    feedback = await translator.translate(TelemetryAnalysis(behavioral_patterns=BehavioralPatterns()))

    assert feedback.issues == []
    assert feedback.generated_request is None
    assert oracle.calls == []
