import pytest

from tunnel_autopilot.scorer import Scorer
from tunnel_autopilot.policy import ScoringPolicy
from tunnel_autopilot.models import Endpoint, ProbeSample, Protocol, QualityClass


EP = Endpoint(Protocol.TCP, "198.51.100.7", 443)

def sample(latency=20.0, loss=0.0, throughput=None, reachable=True):
    if not reachable:
        return ProbeSample.unreachable(EP, timestamp=0.0)
    return ProbeSample(EP, 0.0, True, loss, latency, throughput)


# ===============================
# TEST GROUP: Composite Scoring
# ===============================
# Function: Scorer.score()
# ------------------------
def test_empty_window_is_critical():
    score = Scorer().score([])

    assert score.value == 0.0
    assert score.quality == QualityClass.CRITICAL

@pytest.mark.parametrize(
    "window, expected_value, expected_class",
    [
        # ✅ Fast, clean, throughput measured
        ([sample(latency=20, throughput=2000)], 100.0, QualityClass.EXCELLENT),

        # ✅ Fast, clean, throughput not measured (neutral credit)
        ([sample(latency=20)], 90.0, QualityClass.EXCELLENT),

        # 🟢 Moderate latency
        ([sample(latency=150)], 74.0, QualityClass.GOOD),

        # 🟡 Slow and lossy
        ([sample(latency=400, loss=10)], 41.0, QualityClass.POOR),

        # 🔴 Unreachable
        ([sample(reachable=False)], 10.0, QualityClass.CRITICAL),
    ],
)

def test_score_values(window, expected_value, expected_class):
    """Weighted 40/30/20/10 composite maps to the expected value and class"""
    score = Scorer().score(window)

    assert score.value == pytest.approx(expected_value)
    assert score.quality == expected_class

def test_score_is_deterministic():
    window = [sample(latency=120, loss=2), sample(reachable=False), sample(latency=90)]
    scorer = Scorer()

    assert scorer.score(window) == scorer.score(list(window))

@pytest.mark.parametrize("metric", ["latency", "loss", "throughput"])
def test_improving_one_metric_never_lowers_class(metric):
    """Monotonicity: sweep one sub-metric from worst to best"""
    scorer = Scorer()
    sweeps = {
        "latency": [sample(latency=v) for v in (900, 450, 250, 80)],
        "loss": [sample(loss=v) for v in (50, 15, 3, 0)],
        "throughput": [sample(throughput=v) for v in (0.0, 100, 500, 5000)],
    }

    ranks = [scorer.score([s]).quality.rank for s in sweeps[metric]]

    assert ranks == sorted(ranks)

def test_stability_uses_last_k_samples():
    scorer = Scorer(ScoringPolicy(stability_k=2))
    window = [sample(reachable=False), sample(reachable=False), sample(), sample()]

    assert scorer.stability_credit(window) == 1.0


# ============================
# TEST GROUP: Classification
# ============================
@pytest.mark.parametrize(
    "value, expected",
    [
        (100.0, QualityClass.EXCELLENT),
        (80.0, QualityClass.EXCELLENT),
        (79.9, QualityClass.GOOD),
        (60.0, QualityClass.GOOD),
        (30.0, QualityClass.POOR),
        (29.9, QualityClass.CRITICAL),
        (0.0, QualityClass.CRITICAL),
    ],
)

def test_classify_thresholds(value, expected):
    assert Scorer().classify(value) == expected

@pytest.mark.parametrize(
    "value, previous, expected",
    [
        # Inside the margin below GOOD: hold GOOD
        (57.0, QualityClass.GOOD, QualityClass.GOOD),

        # Beyond the margin: downgrade
        (54.0, QualityClass.GOOD, QualityClass.POOR),

        # Upgrades apply immediately
        (61.0, QualityClass.POOR, QualityClass.GOOD),

        # No previous class
        (57.0, None, QualityClass.POOR),
    ],
)

def test_classify_with_hysteresis(value, previous, expected):
    assert Scorer().classify_with_hysteresis(value, previous) == expected

def test_rescore_keeps_value_and_breakdown():
    scorer = Scorer()
    raw = scorer.score([sample(latency=250, loss=3)])   # 24 + 21 + 10 + 10 = 65

    held = scorer.rescore(raw, QualityClass.EXCELLENT)

    assert held.value == raw.value
    assert held.quality == QualityClass.GOOD
    assert held.breakdown == raw.breakdown


# =========================
# TEST GROUP: Policy Table
# =========================
def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        ScoringPolicy(latency_weight=0.5)

def test_policy_summary_lists_weights():
    summary = ScoringPolicy().summary()

    assert summary["latency_weight"] == 0.40
    assert summary["stability_weight"] == 0.10
