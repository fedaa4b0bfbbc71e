# src/autoloop/core/telemetry.py
"""
Telemetry helpers: behavior summaries, sources and a synthetic generator.

SYNC for aggregation; sources expose an async collect() so live and
simulated telemetry plug into the loop the same way.
"""
import json
import logging
import random
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set, Tuple

from autoloop.core.models import BehavioralPatterns, TelemetryEvent

logger = logging.getLogger(__name__)

PAGE_VIEW = "page_view"
CLICK = "click"
RAGE_CLICK = "rage_click"
HOVER = "hover"
CONVERSION = "conversion"

HESITATION_THRESHOLD_MS = 3000.0
REPEATED_CLICK_THRESHOLD = 3
DEFAULT_GOAL = "purchase"


class TelemetrySource(Protocol):
    async def collect(self) -> List[TelemetryEvent]:
        ...


# ============================================================================
# INGESTION
# ============================================================================

def filter_in_sequence(events: List[TelemetryEvent],
                       last_seen: Dict[str, int]) -> Tuple[List[TelemetryEvent], int]:
    """Keep events whose sequence number strictly increases within their session.

    last_seen (session id -> highest accepted sequence number) is updated in
    place. Returns the accepted events and how many were dropped.
    """
    accepted, dropped = [], 0
    for event in events:
        previous = last_seen.get(event.session_id)
        if previous is not None and event.sequence_number <= previous:
            logger.warning(f"Dropping out-of-order event {event.id} in session {event.session_id} "
                           f"(sequence {event.sequence_number} after {previous})")
            dropped += 1
            continue
        last_seen[event.session_id] = event.sequence_number
        accepted.append(event)
    return accepted, dropped


# ============================================================================
# BEHAVIOR SUMMARY
# ============================================================================

def summarize_behavior(events: List[TelemetryEvent]) -> BehavioralPatterns:
    """Aggregate raw events into hesitation, rage-click, drop-off and conversion patterns."""
    sessions: Dict[str, List[TelemetryEvent]] = defaultdict(list)
    for event in events:
        sessions[event.session_id].append(event)
    for session_events in sessions.values():
        session_events.sort(key=lambda e: e.sequence_number)

    return BehavioralPatterns(
        hesitation_points=_hesitation_points(events),
        rage_clicks=_rage_clicks(sessions),
        drop_off_points=_drop_off_points(sessions),
        successful_conversions=_conversions(sessions)
    )


def _hesitation_points(events: List[TelemetryEvent]) -> List[Dict]:
    dwell: Dict[str, List[float]] = defaultdict(list)
    for event in events:
        if event.element_id and event.duration is not None and event.duration >= HESITATION_THRESHOLD_MS:
            dwell[event.element_id].append(float(event.duration))

    points = [
        {'elementId': element_id, 'avgDwellTime': sum(times) / len(times)}
        for element_id, times in dwell.items()
    ]
    return sorted(points, key=lambda p: (-p['avgDwellTime'], p['elementId']))


def _rage_clicks(sessions: Dict[str, List[TelemetryEvent]]) -> List[Dict]:
    """Explicit rage_click events plus bursts of repeated clicks on one element."""
    counts: Dict[str, int] = defaultdict(int)
    for session_events in sessions.values():
        clicks: Dict[str, int] = defaultdict(int)
        for event in session_events:
            if not event.element_id:
                continue
            if event.event_type == RAGE_CLICK:
                counts[event.element_id] += 1
            elif event.event_type == CLICK:
                clicks[event.element_id] += 1
        for element_id, n in clicks.items():
            if n >= REPEATED_CLICK_THRESHOLD:
                counts[element_id] += n

    return sorted(
        ({'elementId': element_id, 'clickCount': n} for element_id, n in counts.items()),
        key=lambda p: (-p['clickCount'], p['elementId'])
    )


def _converted(session_events: List[TelemetryEvent]) -> bool:
    return any(e.event_type == CONVERSION for e in session_events)


def _drop_off_points(sessions: Dict[str, List[TelemetryEvent]]) -> List[Dict]:
    """Share of visiting sessions that ended on a page without converting."""
    visits: Dict[str, int] = defaultdict(int)
    exits: Dict[str, int] = defaultdict(int)
    for session_events in sessions.values():
        for page in {e.page_path for e in session_events}:
            visits[page] += 1
        if session_events and not _converted(session_events):
            exits[session_events[-1].page_path] += 1

    points = [
        {'pagePath': page, 'dropOffRate': exits[page] / visits[page]}
        for page in exits if visits[page]
    ]
    return sorted(points, key=lambda p: (-p['dropOffRate'], p['pagePath']))


def _conversions(sessions: Dict[str, List[TelemetryEvent]]) -> List[Dict]:
    if not sessions:
        return []
    converted: Dict[str, Set[str]] = defaultdict(set)
    for session_id, session_events in sessions.items():
        for event in session_events:
            if event.event_type == CONVERSION:
                goal = str(event.value or event.context.get('goal') or DEFAULT_GOAL)
                converted[goal].add(session_id)

    return [
        {'goal': goal, 'completionRate': len(ids) / len(sessions)}
        for goal, ids in sorted(converted.items())
    ]


# ============================================================================
# SOURCES
# ============================================================================

class SyntheticTelemetryGenerator:
    """Simulated user journeys through a four-page funnel.

    Each session views /home, /product, /cart and /checkout with a few clicks
    per page (occasionally a rage click or a long hover). At /checkout a
    session either drops off or ends with a conversion event.
    """

    PAGES = ('/home', '/product', '/cart', '/checkout')

    def __init__(self, seed: Optional[int] = None,
                 sessions_per_batch: int = 5,
                 drop_off_probability: float = 0.4,
                 rage_click_probability: float = 0.1,
                 hesitation_probability: float = 0.15):
        self.random = random.Random(seed)
        self.sessions_per_batch = sessions_per_batch
        self.drop_off_probability = drop_off_probability
        self.rage_click_probability = rage_click_probability
        self.hesitation_probability = hesitation_probability

    async def collect(self) -> List[TelemetryEvent]:
        return self.generate()

    def generate(self, sessions: Optional[int] = None) -> List[TelemetryEvent]:
        events = []
        for _ in range(sessions or self.sessions_per_batch):
            events.extend(self.generate_session())
        return events

    def _random_id(self, prefix: str) -> str:
        return f"{prefix}_{self.random.getrandbits(48):012x}"

    def generate_session(self) -> List[TelemetryEvent]:
        session_id = self._random_id("session")
        user_id = f"user-{self.random.randrange(100)}"
        events: List[TelemetryEvent] = []

        def emit(event_type: str, page: str, **fields) -> TelemetryEvent:
            event = TelemetryEvent(
                id=self._random_id("event"),
                session_id=session_id,
                user_id=user_id,
                sequence_number=len(events),
                event_type=event_type,
                page_path=page,
                previous_event_id=events[-1].id if events else None,
                **fields
            )
            events.append(event)
            return event

        for page_index, page in enumerate(self.PAGES):
            emit(PAGE_VIEW, page)

            for i in range(self.random.randint(1, 5)):
                element_id = f"element-{page_index}-{i}"
                if self.random.random() < self.hesitation_probability:
                    emit(HOVER, page, element_id=element_id, element_type='button',
                         duration=float(self.random.randint(3000, 12000)))
                event_type = RAGE_CLICK if self.random.random() < self.rage_click_probability else CLICK
                emit(event_type, page, element_id=element_id, element_type='button')

            if page == self.PAGES[-1]:
                if self.random.random() < self.drop_off_probability:
                    return events
                emit(CONVERSION, page, value=DEFAULT_GOAL)

        return events


class DirectoryTelemetrySource:
    """Reads new *.jsonl batch files from a directory, one event per line."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._processed: Set[str] = set()

    async def collect(self) -> List[TelemetryEvent]:
        if not self.directory.exists():
            logger.warning(f"Telemetry directory not found: {self.directory}")
            return []

        events = []
        for batch in sorted(self.directory.glob("*.jsonl")):
            if batch.name in self._processed:
                continue
            try:
                batch_events = self._read_batch(batch)
            except UnicodeDecodeError as e:
                # Undecodable batches never become readable; skip them for good
                logger.error(f"Skipping undecodable telemetry batch {batch.name}: {e}")
                self._processed.add(batch.name)
                continue
            except OSError as e:
                logger.error(f"Could not read telemetry batch {batch.name}, retrying next pass: {e}")
                continue
            events.extend(batch_events)
            self._processed.add(batch.name)

        if events:
            logger.info(f"Collected {len(events)} events from {self.directory}")
        return events

    def _read_batch(self, path: Path) -> List[TelemetryEvent]:
        events = []
        with open(path, 'r', encoding='utf-8') as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(TelemetryEvent.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping bad event at {path.name}:{line_number}: {e}")
        return events
