import json

import pytest

from autoloop.core.models import TelemetryEvent
from autoloop.core.telemetry import (
    CONVERSION, PAGE_VIEW, DirectoryTelemetrySource, SyntheticTelemetryGenerator,
    filter_in_sequence, summarize_behavior
)


def event(session, seq, event_type, page="/home", **fields):
    return TelemetryEvent(session_id=session, sequence_number=seq, event_type=event_type,
                          page_path=page, **fields)


def test_out_of_order_events_are_dropped():
    last_seen = {}
    events = [
        event("s1", 0, "page_view"),
        event("s1", 2, "click", element_id="a"),
        event("s1", 1, "click", element_id="b"),
        event("s1", 2, "click", element_id="c"),
        event("s2", 0, "page_view"),
    ]

    accepted, dropped = filter_in_sequence(events, last_seen)

    assert [e.element_id for e in accepted if e.session_id == "s1"] == [None, "a"]
    assert dropped == 2
    assert last_seen == {"s1": 2, "s2": 0}


def test_behavior_summary():
    events = [
        # s1: long hover, three clicks on the same button, leaves at /cart
        event("s1", 0, "page_view", "/cart"),
        event("s1", 1, "hover", "/cart", element_id="promo", duration=8000),
        event("s1", 2, "click", "/cart", element_id="apply"),
        event("s1", 3, "click", "/cart", element_id="apply"),
        event("s1", 4, "click", "/cart", element_id="apply"),
        # s2: short hover, converts at /checkout
        event("s2", 0, "page_view", "/cart"),
        event("s2", 1, "hover", "/cart", element_id="promo", duration=4000),
        event("s2", 2, "page_view", "/checkout"),
        event("s2", 3, "conversion", "/checkout", value="purchase"),
        # s3: a rage click, leaves at /checkout
        event("s3", 0, "page_view", "/checkout"),
        event("s3", 1, "rage_click", "/checkout", element_id="pay"),
    ]

    patterns = summarize_behavior(events)

    assert patterns.hesitation_points == [{'elementId': 'promo', 'avgDwellTime': 6000.0}]
    assert patterns.rage_clicks == [
        {'elementId': 'apply', 'clickCount': 3},
        {'elementId': 'pay', 'clickCount': 1},
    ]
    assert patterns.drop_off_points == [
        {'pagePath': '/cart', 'dropOffRate': 0.5},
        {'pagePath': '/checkout', 'dropOffRate': 0.5},
    ]
    assert patterns.successful_conversions == [{'goal': 'purchase', 'completionRate': pytest.approx(1 / 3)}]


def test_short_dwell_and_sparse_clicks_are_not_friction():
    patterns = summarize_behavior([
        event("s1", 0, "hover", element_id="menu", duration=1200),
        event("s1", 1, "click", element_id="menu"),
        event("s1", 2, "click", element_id="menu"),
        event("s1", 3, "conversion", value="signup"),
    ])

    assert patterns.hesitation_points == []
    assert patterns.rage_clicks == []
    assert patterns.drop_off_points == []
    assert patterns.successful_conversions == [{'goal': 'signup', 'completionRate': 1.0}]


def test_synthetic_sessions_are_well_formed():
    generator = SyntheticTelemetryGenerator(seed=3, sessions_per_batch=4)

    events = generator.generate()

    sessions = {}
    for e in events:
        sessions.setdefault(e.session_id, []).append(e)
    assert len(sessions) == 4
    for session_events in sessions.values():
        assert [e.sequence_number for e in session_events] == list(range(len(session_events)))
        assert session_events[0].event_type == PAGE_VIEW
        assert session_events[0].page_path == "/home"
        assert session_events[1].previous_event_id == session_events[0].id
    accepted, dropped = filter_in_sequence(events, {})
    assert dropped == 0


@pytest.mark.parametrize("drop_off, converting", [(0.0, 3), (1.0, 0)])
def test_synthetic_drop_off_probability(drop_off, converting):
    generator = SyntheticTelemetryGenerator(seed=1, drop_off_probability=drop_off)

    events = generator.generate(sessions=3)

    assert sum(1 for e in events if e.event_type == CONVERSION) == converting


async def test_directory_source_reads_each_batch_once(tmp_path):
    good = event("s1", 0, "page_view").to_dict()
    (tmp_path / "batch_001.jsonl").write_text(
        json.dumps(good) + "\n" + "{not json}\n" + "\n" + json.dumps({"sessionId": "s1"}) + "\n"
    )
    source = DirectoryTelemetrySource(str(tmp_path))

    first = await source.collect()
    second = await source.collect()

    assert [e.id for e in first] == [good['id']]
    assert second == []

    (tmp_path / "batch_002.jsonl").write_text(json.dumps(event("s1", 1, "click").to_dict()) + "\n")
    third = await source.collect()
    assert [e.sequence_number for e in third] == [1]


async def test_undecodable_batch_does_not_lose_other_batches(tmp_path):
    good = [event("s1", 0, "page_view").to_dict(), event("s1", 1, "click").to_dict()]
    (tmp_path / "a.jsonl").write_text("".join(json.dumps(e) + "\n" for e in good))
    (tmp_path / "b.jsonl").write_bytes(json.dumps(good[0]).encode() + b"\n\xff\xfe")
    source = DirectoryTelemetrySource(str(tmp_path))

    first = await source.collect()
    second = await source.collect()

    assert [e.id for e in first] == [e['id'] for e in good]
    assert second == []


def test_seeded_generators_are_reproducible():
    first = SyntheticTelemetryGenerator(seed=7).generate()
    second = SyntheticTelemetryGenerator(seed=7).generate()

    assert [(e.session_id, e.id, e.event_type) for e in first] == \
        [(e.session_id, e.id, e.event_type) for e in second]


async def test_missing_directory_yields_nothing(tmp_path):
    assert await DirectoryTelemetrySource(str(tmp_path / "nope")).collect() == []
