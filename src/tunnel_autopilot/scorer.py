# ─── Standard library imports ───
import statistics
from typing import Sequence

# ─── Project imports ───
from .policy import ScoringPolicy
from .models import ProbeSample, QualityClass, QualityScore


class Scorer:
    """
    Pure function: window of ProbeSamples → QualityScore.

    No I/O and no state beyond the immutable policy, so identical inputs
    always produce identical scores. Every step table is monotonic, so
    improving one sub-metric alone never lowers the class.
    """

    def __init__(self, policy: ScoringPolicy | None = None):
        self.policy = policy or ScoringPolicy()

    # ─── Sub-metric credits (0.0 – 1.0) ───

    def latency_credit(self, latency_ms: float | None) -> float:
        if latency_ms is None:
            return 0.0
        for bound, credit in self.policy.latency_steps_ms:
            if latency_ms < bound:
                return credit
        return 0.0

    def loss_credit(self, loss_pct: float) -> float:
        for bound, credit in self.policy.loss_steps_pct:
            if loss_pct <= bound:
                return credit
        return 0.0

    def throughput_credit(self, throughput_kbps: float | None) -> float:
        if throughput_kbps is None:
            return self.policy.unmeasured_throughput_credit
        for bound, credit in self.policy.throughput_steps_kbps:
            if throughput_kbps >= bound:
                return credit
        return 0.0

    def stability_credit(self, window: Sequence[ProbeSample]) -> float:
        recent = list(window)[-self.policy.stability_k:]
        if not recent:
            return 0.0
        return sum(1 for s in recent if s.reachable) / len(recent)

    # ─── Composite ───

    def score(self, window: Sequence[ProbeSample]) -> QualityScore:
        """
        Weighted composite over a window of samples (oldest first).

        Aggregation:
            latency    = median of reachable samples
            loss       = mean loss_pct
            throughput = mean of measured samples
            stability  = fraction of last k samples reachable
        """
        window = list(window)
        if not window:
            return QualityScore(0.0, QualityClass.CRITICAL)

        latencies = [
            s.latency_ms for s in window
            if s.reachable and s.latency_ms is not None
        ]
        throughputs = [
            s.throughput_kbps for s in window if s.throughput_kbps is not None
        ]

        latency = statistics.median(latencies) if latencies else None
        loss = statistics.fmean(s.loss_pct for s in window)
        throughput = statistics.fmean(throughputs) if throughputs else None

        p = self.policy
        breakdown = {
            "latency": p.latency_weight * self.latency_credit(latency),
            "loss": p.loss_weight * self.loss_credit(loss),
            "throughput": p.throughput_weight * self.throughput_credit(throughput),
            "stability": p.stability_weight * self.stability_credit(window),
        }
        value = round(100 * sum(breakdown.values()), 1)
        return QualityScore(value, self.classify(value), breakdown)

    def classify(self, value: float) -> QualityClass:
        p = self.policy
        if value >= p.excellent_at:
            return QualityClass.EXCELLENT
        if value >= p.good_at:
            return QualityClass.GOOD
        if value >= p.poor_at:
            return QualityClass.POOR
        return QualityClass.CRITICAL

    def threshold(self, quality: QualityClass) -> float:
        p = self.policy
        return {
            QualityClass.EXCELLENT: p.excellent_at,
            QualityClass.GOOD: p.good_at,
            QualityClass.POOR: p.poor_at,
            QualityClass.CRITICAL: 0.0,
        }[quality]

    def classify_with_hysteresis(
        self,
        value: float,
        previous: QualityClass | None,
    ) -> QualityClass:
        """
        Classify, but hold a better previous class until the value drops
        `hysteresis_margin` below that class's threshold.

        Upgrades apply immediately; only downgrades are damped.
        """
        current = self.classify(value)
        if previous is None or current.rank >= previous.rank:
            return current
        if value >= self.threshold(previous) - self.policy.hysteresis_margin:
            return previous
        return current

    def rescore(self, score: QualityScore, previous: QualityClass | None) -> QualityScore:
        """Return `score` with its class adjusted for hysteresis."""
        quality = self.classify_with_hysteresis(score.value, previous)
        if quality == score.quality:
            return score
        return QualityScore(score.value, quality, score.breakdown)
