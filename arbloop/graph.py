# arbloop/graph.py
"""
Quote graph and negative-cycle search.

Currencies are nodes. Every PriceSample contributes two directed edges
weighted by -ln(rate), so a loop of conversions that ends with more than it
started has a negative weight sum. Bellman-Ford run from each node exposes
such loops; the predecessor chain left behind by the final relaxation is
walked back to recover the edges.
"""
import math
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from .exceptions import CycleReconstructionError, InsufficientDataError, MalformedSampleError
from .models import Cycle, Edge, PriceSample, SampleKey

Snapshot = Mapping[SampleKey, PriceSample]


@dataclass
class PriceGraph:
    nodes: List[str] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    rejected: List[MalformedSampleError] = field(default_factory=list)


def build_edges(sample: PriceSample) -> Tuple[Edge, Edge]:
    """
    Returns (base -> quote, quote -> base) for one sample.
    The reverse weight is the exact negation so a same-venue round trip sums to 0.
    """
    if sample.symbol.count('/') != 1 or sample.base == sample.quote or not sample.base or not sample.quote:
        raise MalformedSampleError(sample, f"unrecognised symbol '{sample.symbol}'")
    price = sample.price
    if price is None or not math.isfinite(price) or price <= 0:
        raise MalformedSampleError(sample, f"non-positive price {price}")
    weight = -math.log(price)
    return (Edge(sample.base, sample.quote, weight, sample),
            Edge(sample.quote, sample.base, -weight, sample))


def build_graph(snapshot: Snapshot, logger: Optional[logging.Logger] = None) -> PriceGraph:
    """One edge pair per sample; several venues for a symbol give parallel edges."""
    logger = logger or logging.getLogger(__name__)
    graph = PriceGraph()
    nodes = set()
    for sample in snapshot.values():
        try:
            forward, backward = build_edges(sample)
        except MalformedSampleError as e:
            logger.warning(f"⚠️ Rejected sample: {e}")
            graph.rejected.append(e)
            continue
        graph.edges.extend((forward, backward))
        nodes.update((forward.source, forward.target))
    graph.nodes = sorted(nodes)
    return graph


def has_cross_venue_quotes(snapshot: Snapshot) -> bool:
    venues_by_symbol: Dict[str, set] = {}
    for symbol, venue in snapshot.keys():
        venues_by_symbol.setdefault(symbol, set()).add(venue)
    return any(len(v) >= 2 for v in venues_by_symbol.values())


def require_cross_venue_quotes(snapshot: Snapshot):
    if not has_cross_venue_quotes(snapshot):
        raise InsufficientDataError(f"no symbol quoted on two venues ({len(snapshot)} sample(s))")


class CycleDetector:
    """
    Finds profitable conversion loops in a price snapshot.

    Only loops of 2..max_cycle_length edges are reported. Loops found from
    several start nodes are reported once.
    """
    def __init__(self, max_cycle_length: int = 3, numeraire: Optional[str] = None,
                 logger: Optional[logging.Logger] = None, tolerance: float = 1e-12):
        self.max_cycle_length = max_cycle_length
        self.numeraire = numeraire
        self.logger = logger or logging.getLogger(__name__)
        # minimum improvement for any relaxation; ulp-level gains on consistent prices are ignored
        self.tolerance = tolerance
        self.last_graph: Optional[PriceGraph] = None

    def detect(self, snapshot: Snapshot) -> List[Cycle]:
        """
        Repeats the search with one edge of every loop found so far removed,
        so a dominant loop cannot hide weaker ones sharing its nodes.
        Stops when a pass turns up nothing new; each pass removes at least one edge.
        """
        try:
            require_cross_venue_quotes(snapshot)
        except InsufficientDataError as e:
            self.logger.debug(f"Insufficient data: {e}")
            self.last_graph = None
            return []

        graph = build_graph(snapshot, self.logger)
        self.last_graph = graph
        found: Dict[Tuple[SampleKey, ...], Cycle] = {}
        seen: Set[FrozenSet[Edge]] = set()
        excluded: Set[Edge] = set()
        passes = 0

        while passes <= len(graph.edges):
            passes += 1
            edges = [e for e in graph.edges if e not in excluded]
            new_cycles = []
            for source in graph.nodes:
                for cycle in self._search_from(source, graph.nodes, edges):
                    loop = frozenset(cycle.edges)
                    if loop in seen:
                        continue
                    seen.add(loop)
                    new_cycles.append(cycle)
                    # next pass runs without its strongest conversion
                    if not loop & excluded:
                        excluded.add(min(cycle.edges, key=lambda e: e.weight))
            if not new_cycles:
                break

            for cycle in new_cycles:
                if not 2 <= len(cycle) <= self.max_cycle_length:
                    continue
                if cycle.total_weight >= 0:
                    continue
                key = cycle.dedupe_key
                if key in found:
                    continue
                found[key] = cycle.rotated_to(self.numeraire) if self.numeraire else cycle

        cycles = sorted(found.values(), key=lambda c: c.profit_percent, reverse=True)
        if cycles:
            self.logger.debug(f"Detected {len(cycles)} negative cycle(s) over {len(graph.nodes)} nodes / {len(graph.edges)} edges in {passes} pass(es)")
        return cycles

    def _search_from(self, source: str, nodes: List[str], edges: List[Edge]) -> List[Cycle]:
        dist: Dict[str, float] = {n: math.inf for n in nodes}
        pred: Dict[str, Optional[Edge]] = {n: None for n in nodes}
        dist[source] = 0.0

        for _ in range(len(nodes) - 1):
            changed = False
            for edge in edges:
                candidate = dist[edge.source] + edge.weight
                if candidate < dist[edge.target] - self.tolerance:
                    dist[edge.target] = candidate
                    pred[edge.target] = edge
                    changed = True
            if not changed:
                return []

        cycles = []
        for edge in edges:
            if dist[edge.source] == math.inf:
                continue
            candidate = dist[edge.source] + edge.weight
            if candidate < dist[edge.target] - self.tolerance:
                dist[edge.target] = candidate
                pred[edge.target] = edge
                cycles.append(reconstruct_cycle(edge.target, pred, len(nodes)))
        return cycles


def reconstruct_cycle(start: str, pred: Mapping[str, Optional[Edge]], bound: int) -> Cycle:
    """
    Walks predecessor edges back from `start` until a node repeats.
    At most `bound` (= |V|) steps are taken; anything else is a detector bug.
    """
    seen = {start: 0}
    walked: List[Edge] = []
    node = start
    for _ in range(bound):
        edge = pred.get(node)
        if edge is None:
            raise CycleReconstructionError(f"predecessor chain from {start} ends at {node} without closing a loop")
        walked.append(edge)
        node = edge.source
        if node in seen:
            loop = walked[seen[node]:]
            loop.reverse()
            return Cycle(tuple(loop))
        seen[node] = len(walked)
    raise CycleReconstructionError(f"no repeated node within {bound} steps from {start}")


def detect_opportunities(snapshot: Snapshot, max_cycle_length: int = 3,
                         numeraire: Optional[str] = None) -> List[Cycle]:
    return CycleDetector(max_cycle_length=max_cycle_length, numeraire=numeraire).detect(snapshot)
