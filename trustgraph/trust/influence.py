"""
TrustGraph — Influence Solver
Damped, weight-normalized iterative influence (the PageRank family).

    score₀[A]     = 1/N
    scoreₖ₊₁[A]   = (1-d)/N + d · Σ  scoreₖ[S] · w(S→A) / out(S)
                              S→A active

    out(S) = total weight of S's active outgoing edges.

Dangling agents (out(S) = 0) contribute nothing in a round. Their mass is
dropped, not spread uniformly across the graph, so raw scores sum to less
than 1 whenever sinks exist. This matches the rankings the platform has
always published; uniform redistribution would reorder them.

Termination: Σ|Δ| < tolerance (converged) or the iteration cap (not
converged, ComputationIncomplete is warned). The cap is the only bound on
latency; there is no mid-computation cancellation.

Normalization: score / max(score) · 100. A graph with no active edges has
nothing to rank, so every agent is 0 and the run counts as converged on
iteration 1.
"""
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import structlog

from trustgraph.errors import ComputationIncomplete
from trustgraph.graph.store import GraphSnapshot

logger = structlog.get_logger()

DEFAULT_DAMPING = 0.85
DEFAULT_TOLERANCE = 1e-6
DEFAULT_MAX_ITERATIONS = 100


@dataclass
class InfluenceResult:
    raw: Dict[str, float] = field(default_factory=dict)          # sums to ≤ 1
    normalized: Dict[str, float] = field(default_factory=dict)   # 0-100
    iterations: int = 0
    converged: bool = True
    residual: float = 0.0                                        # Σ|Δ| of the last round


class InfluenceSolver:
    def __init__(
        self,
        damping: float = DEFAULT_DAMPING,
        tolerance: float = DEFAULT_TOLERANCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        if not 0.0 <= damping <= 1.0:
            raise ValueError(f"damping must be within [0, 1], got {damping}")
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.damping = damping
        self.tolerance = tolerance
        self.max_iterations = max_iterations

    def solve(self, snap: GraphSnapshot) -> InfluenceResult:
        nodes = sorted(snap.nodes)
        n = len(nodes)
        if n == 0:
            return InfluenceResult(iterations=0, converged=True)

        incoming, has_edges = self._incoming(snap, nodes)
        uniform = 1.0 / n

        if not has_edges:
            return InfluenceResult(
                raw={node: uniform for node in nodes},
                normalized={node: 0.0 for node in nodes},
                iterations=1,
                converged=True,
            )

        d = self.damping
        base = (1.0 - d) / n
        scores = {node: uniform for node in nodes}
        converged = False
        residual = 0.0
        iterations = 0

        for iterations in range(1, self.max_iterations + 1):
            updated = {}
            residual = 0.0
            for node in nodes:
                inflow = sum(scores[src] * share for src, share in incoming[node])
                updated[node] = base + d * inflow
                residual += abs(updated[node] - scores[node])
            scores = updated
            if residual < self.tolerance:
                converged = True
                break

        if not converged:
            warnings.warn(
                f"influence did not converge within {self.max_iterations} iterations "
                f"(residual {residual:.3e})",
                ComputationIncomplete,
                stacklevel=2,
            )
            logger.warning("influence_not_converged", iterations=iterations,
                           residual=residual, nodes=n)

        return InfluenceResult(
            raw=scores,
            normalized=self._normalize(scores),
            iterations=iterations,
            converged=converged,
            residual=residual,
        )

    @staticmethod
    def _incoming(snap: GraphSnapshot, nodes: List[str]) -> Tuple[Dict[str, List[Tuple[str, float]]], bool]:
        """Map each agent to (source, w/out(source)) for its active in-edges."""
        out_weight = {node: 0.0 for node in nodes}
        active = snap.active_edges
        for edge in active:
            out_weight[edge.source] += edge.weight

        incoming: Dict[str, List[Tuple[str, float]]] = {node: [] for node in nodes}
        for edge in active:
            total = out_weight[edge.source]
            if total > 0 and edge.weight > 0:
                incoming[edge.target].append((edge.source, edge.weight / total))
        # zero-weight edges carry no influence, same as no edges at all
        return incoming, any(incoming.values())

    @staticmethod
    def _normalize(scores: Dict[str, float]) -> Dict[str, float]:
        peak = max(scores.values()) if scores else 0.0
        if peak <= 0:
            return {node: 0.0 for node in scores}
        return {node: value / peak * 100.0 for node, value in scores.items()}
