"""
Split-Stay Allocator

When no single apartment is free for a whole stay, find combinations of
apartments that together cover [check_in, check_out) exactly once per night.

Algorithm (interval covering with bounded hops):
1. Clip each apartment's free intervals to the requested range
2. Cut points = check_in, check_out and every free-interval boundary inside the range
3. A night between two adjacent cut points nobody covers makes the stay infeasible
4. Edge p -> q exists when some apartment is free for all of [p, q)
5. No apartment may appear twice in one option
6. BFS gives a lower bound on segments; DFS enumerates reuse-free paths of the
   smallest length that has any, up to max_segments
7. Options are ranked by a configurable comparator

The allocator only reads. Its output is re-validated per segment at confirmation time.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import InvalidRange
from ..utils.logging_config import get_logger
from ..utils.metrics import split_stay_searches_total, split_stay_duration_seconds
from .availability_query import AvailabilityQuery
from .catalog import CatalogService
from .ledger import validate_range

logger = get_logger(__name__)

Interval = Tuple[date, date]
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class ApartmentCandidate:
    """What the allocator needs to know about an apartment"""
    apartment_id: str
    nightly_rate: Decimal
    sort_order: int = 0
    title: str = ""


@dataclass(frozen=True)
class ProposedSegment:
    apartment_id: str
    check_in: date
    check_out: date
    price: Decimal
    sort_order: int = 0
    title: str = ""

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    def to_dict(self) -> dict:
        return {
            "apartment_id": self.apartment_id,
            "title": self.title,
            "check_in": self.check_in,
            "check_out": self.check_out,
            "nights": self.nights,
            "price": self.price,
        }


@dataclass
class SplitStayOption:
    segments: List[ProposedSegment] = field(default_factory=list)

    @property
    def segment_count(self) -> int:
        return len(self.segments)

    @property
    def total_price(self) -> Decimal:
        return sum((s.price for s in self.segments), Decimal("0.00"))

    @property
    def apartment_ids(self) -> Tuple[str, ...]:
        return tuple(s.apartment_id for s in self.segments)

    @property
    def priority(self) -> Tuple[int, ...]:
        return tuple(s.sort_order for s in self.segments)

    @property
    def handoffs(self) -> Tuple[date, ...]:
        return tuple(s.check_out for s in self.segments[:-1])

    def to_dict(self) -> dict:
        return {
            "segments": [s.to_dict() for s in self.segments],
            "segment_count": self.segment_count,
            "total_price": self.total_price,
            "is_split_stay": self.segment_count > 1,
        }


RANKING_FUNCTIONS = {
    "segments": lambda option: option.segment_count,
    "price": lambda option: option.total_price,
    "priority": lambda option: option.priority,
    "handoff": lambda option: option.handoffs,
}


def ranking_key(keys: Sequence[str]):
    """Sort key applying the comparator keys in order, apartment ids as the final tie-break"""
    functions = [RANKING_FUNCTIONS[k] for k in keys]

    def key(option: SplitStayOption):
        return tuple(fn(option) for fn in functions) + (option.apartment_ids,)

    return key


def segment_price(rate: Decimal, nights: int) -> Decimal:
    return (Decimal(rate) * nights).quantize(CENTS)


def _clip(intervals: Sequence[Interval], start: date, end: date) -> List[Interval]:
    clipped = []
    for s, e in intervals:
        s, e = max(s, start), min(e, end)
        if s < e:
            clipped.append((s, e))
    return clipped


def allocate(
    check_in: date,
    check_out: date,
    candidates: Sequence[ApartmentCandidate],
    free_intervals: Dict[str, Sequence[Interval]],
    max_segments: int,
    max_options: int = 10,
    enumeration_limit: int = 500,
    ranking: Sequence[str] = ("segments", "price", "priority"),
) -> List[SplitStayOption]:
    """
    Ranked minimal-length partitions of [check_in, check_out).

    Returns [] when any night has no free apartment, or when no cover without
    a repeated apartment fits in max_segments segments. When one apartment
    covers the whole range the options are single-segment.
    """
    if check_out <= check_in:
        raise InvalidRange(f"check_out {check_out} must be after check_in {check_in}")
    if max_segments < 1:
        raise InvalidRange("max_segments must be at least 1")

    by_id = {c.apartment_id: c for c in candidates}
    intervals: Dict[str, List[Interval]] = {}
    for candidate in candidates:
        clipped = _clip(free_intervals.get(candidate.apartment_id, ()), check_in, check_out)
        if clipped:
            intervals[candidate.apartment_id] = clipped

    cuts = {check_in, check_out}
    for clipped in intervals.values():
        for s, e in clipped:
            cuts.add(s)
            cuts.add(e)
    points = sorted(cuts)
    index = {p: i for i, p in enumerate(points)}
    last = len(points) - 1

    # Every elementary sub-interval must be covered by someone
    for a, b in zip(points, points[1:]):
        if not any(s <= a and b <= e for clipped in intervals.values() for s, e in clipped):
            logger.debug(f"No apartment free for {a}..{b}")
            return []

    # edges[i] = [(j, apartment_id)], ascending by j so earlier handoffs come first
    edges: Dict[int, List[Tuple[int, str]]] = {i: [] for i in range(len(points))}
    reverse: Dict[int, List[int]] = {i: [] for i in range(len(points))}
    for apartment_id, clipped in intervals.items():
        for s, e in clipped:
            lo, hi = index[s], index[e]
            for i in range(lo, hi):
                for j in range(i + 1, hi + 1):
                    edges[i].append((j, apartment_id))
                    reverse[j].append(i)
    for i in edges:
        edges[i].sort(key=lambda edge: (edge[0], by_id[edge[1]].sort_order, edge[1]))

    # Hops remaining from each cut point to check_out, ignoring the no-reuse rule
    remaining = {last: 0}
    queue = deque([last])
    while queue:
        j = queue.popleft()
        for i in reverse[j]:
            if i not in remaining:
                remaining[i] = remaining[j] + 1
                queue.append(i)

    shortest = remaining.get(0)
    if shortest is None or shortest > max_segments:
        logger.debug(f"Fewest segments {shortest} exceeds max {max_segments}")
        return []

    paths: List[List[Tuple[int, int, str]]] = []
    explored = 0

    def walk(i: int, length: int, used: Tuple[str, ...], path: List[Tuple[int, int, str]]):
        nonlocal explored
        if explored >= enumeration_limit:
            return
        if i == last:
            paths.append(list(path))
            explored += 1
            return
        hops_left = length - len(path)
        for j, apartment_id in edges[i]:
            if apartment_id in used or remaining.get(j, hops_left) > hops_left - 1:
                continue
            path.append((i, j, apartment_id))
            walk(j, length, used + (apartment_id,), path)
            path.pop()
            if explored >= enumeration_limit:
                return

    # remaining[] is only a lower bound once apartments can't repeat, so
    # lengthen until some reuse-free path fits
    for length in range(shortest, max_segments + 1):
        walk(0, length, (), [])
        if paths:
            break
    else:
        logger.debug(f"No cover without reusing an apartment within {max_segments} segments")
        return []

    # One option per apartment sequence, keeping its earliest handoffs
    options: Dict[Tuple[str, ...], SplitStayOption] = {}
    for path in paths:
        sequence = tuple(apartment_id for _, _, apartment_id in path)
        if sequence in options:
            continue
        segments = []
        for i, j, apartment_id in path:
            candidate = by_id[apartment_id]
            nights = (points[j] - points[i]).days
            segments.append(ProposedSegment(
                apartment_id=apartment_id,
                check_in=points[i],
                check_out=points[j],
                price=segment_price(candidate.nightly_rate, nights),
                sort_order=candidate.sort_order,
                title=candidate.title,
            ))
        options[sequence] = SplitStayOption(segments=segments)

    ranked = sorted(options.values(), key=ranking_key(ranking))
    return ranked[:max_options]


class SplitStayService:
    """Feeds the allocator from the catalog and the ledger"""

    def __init__(self, db: Session):
        self.db = db

    def candidates(self) -> List[ApartmentCandidate]:
        return [
            ApartmentCandidate(
                apartment_id=apartment.id,
                nightly_rate=apartment.nightly_rate(settings.days_per_month_rate),
                sort_order=apartment.sort_order or 0,
                title=apartment.title,
            )
            for apartment in CatalogService(self.db).list_operationally_available()
        ]

    def find_split_stay_options(
        self,
        check_in: date,
        check_out: date,
        max_segments: Optional[int] = None
    ) -> List[SplitStayOption]:
        """
        Ranked split-stay options for a stay, possibly empty.

        An empty list means no combination exists; it is not an error.
        """
        validate_range(check_in, check_out)
        max_segments = max_segments or settings.max_split_segments
        if max_segments < 2:
            raise InvalidRange("max_segments must be at least 2")

        if not settings.split_stays_enabled:
            logger.info("Split stays disabled, skipping allocator")
            return []

        start_time = time.perf_counter()
        candidates = self.candidates()
        free = AvailabilityQuery(self.db).free_intervals_for(
            [c.apartment_id for c in candidates], check_in, check_out
        )
        options = allocate(
            check_in,
            check_out,
            candidates,
            free,
            max_segments=max_segments,
            max_options=settings.split_stay_max_options,
            enumeration_limit=settings.split_stay_enumeration_limit,
            ranking=settings.ranking_keys,
        )
        duration = time.perf_counter() - start_time

        split_stay_searches_total.inc(outcome="found" if options else "infeasible")
        split_stay_duration_seconds.observe(duration)
        logger.log_with_context(
            logging.INFO,
            f"Split stay search {check_in}..{check_out}: {len(options)} options",
            duration_ms=round(duration * 1000, 2),
            candidates=len(candidates),
            max_segments=max_segments,
        )
        return options
