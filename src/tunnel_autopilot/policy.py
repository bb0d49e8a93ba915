# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
from dataclasses import dataclass, field

# ─── Project imports ───
from .config import config


@dataclass(frozen=True)
class ScoringPolicy:
    """
    Named weight/threshold table for the composite quality score.

    One canonical table replaces the near-duplicate quick/detailed scoring
    variants. Weights must sum to 1.0; each step table maps a bound to the
    credit earned when the metric is inside that bound.
    """

    # ─── Weights ───
    latency_weight: float = 0.40
    loss_weight: float = 0.30
    throughput_weight: float = 0.20
    stability_weight: float = 0.10

    # ─── Step functions: (upper bound, credit), first match wins ───
    latency_steps_ms: tuple[tuple[float, float], ...] = (
        (100.0, 1.0),
        (300.0, 0.6),
        (500.0, 0.3),
    )
    loss_steps_pct: tuple[tuple[float, float], ...] = (
        (1.0, 1.0),
        (5.0, 0.7),
        (20.0, 0.3),
    )
    # (lower bound, credit), first match wins
    throughput_steps_kbps: tuple[tuple[float, float], ...] = (
        (1000.0, 1.0),
        (256.0, 0.6),
        (0.001, 0.3),
    )
    unmeasured_throughput_credit: float = 0.5

    # Short-horizon stability: fraction of the last k samples reachable
    stability_k: int = 5

    # ─── Classification ───
    excellent_at: float = 80.0
    good_at: float = 60.0
    poor_at: float = 30.0
    hysteresis_margin: float = 5.0

    def __post_init__(self):
        total = (
            self.latency_weight + self.loss_weight
            + self.throughput_weight + self.stability_weight
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"scoring weights must sum to 1.0 (got {total:.3f})")

    def summary(self) -> dict[str, float]:
        return {
            "latency_weight": self.latency_weight,
            "loss_weight": self.loss_weight,
            "throughput_weight": self.throughput_weight,
            "stability_weight": self.stability_weight,
            "excellent_at": self.excellent_at,
            "good_at": self.good_at,
            "poor_at": self.poor_at,
        }


@dataclass(frozen=True)
class CyclerPolicy:
    """
    Dwell/back-off behaviour of the endpoint cycler.

    Randomized dwell and retry delays keep independent nodes from
    re-validating in lockstep.
    """

    failure_ceiling: int = field(default_factory=lambda: config.CYCLER_FAILURE_CEILING)

    # Dwell once locked (seconds)
    dwell_degraded_s: tuple[float, float] = (3 * 60, 8 * 60)
    dwell_normal_s: tuple[float, float] = (5 * 60, 15 * 60)

    # Delay between failed candidates (seconds)
    retry_delay_s: tuple[float, float] = (5, 15)

    # Time spent in BACKING_OFF before probing resumes
    backoff_s: float = 5 * 60

    def summary(self) -> dict[str, object]:
        return {
            "failure_ceiling": self.failure_ceiling,
            "dwell_degraded_s": self.dwell_degraded_s,
            "dwell_normal_s": self.dwell_normal_s,
            "retry_delay_s": self.retry_delay_s,
            "backoff_s": self.backoff_s,
        }


@dataclass(frozen=True)
class GeoPolicy:
    """Budgets for fast geo selection and the slower refinement pass."""

    # ─── Fast selection ───
    select_budget_s: float = field(default_factory=lambda: config.GEO_SELECT_BUDGET_S)
    per_probe_budget_s: float = 2.0
    max_workers: int = field(default_factory=lambda: config.GEO_MAX_WORKERS)

    # ─── Background refinement ───
    refine_attempts: int = 5
    refine_budget_s: float = 6.0

    # ─── Rebalancing ───
    rebalance_interval_s: float = field(
        default_factory=lambda: config.GEO_REBALANCE_INTERVAL_S
    )
    rebalance_margin: float = 15.0   # score points

    def rebalance_every(self, restricted: bool) -> float:
        """Rebalance cadence; halved under detected interference."""
        return self.rebalance_interval_s / 2 if restricted else self.rebalance_interval_s

    def summary(self) -> dict[str, float]:
        return {
            "select_budget_s": self.select_budget_s,
            "max_workers": self.max_workers,
            "refine_attempts": self.refine_attempts,
            "rebalance_interval_s": self.rebalance_interval_s,
            "rebalance_margin": self.rebalance_margin,
        }
