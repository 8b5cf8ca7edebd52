import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from nav_optimizer.config import OptimizerConfig  # noqa: E402
from nav_optimizer.hybrid_classifier import HybridClassifier, merge_verdicts  # noqa: E402
from nav_optimizer.models import StepClassificationResult  # noqa: E402
from nav_optimizer.oracle import OracleInvalidResponse, OracleTransportError, build_oracle_request  # noqa: E402
from nav_optimizer.rule_classifier import classify_step  # noqa: E402
from nav_optimizer.sequence_detector import detect_navigation_sequences  # noqa: E402
from workflow_factories import (  # noqa: E402
    U0,
    U1,
    U2,
    AgreeingOracle,
    ExplodingOracle,
    HangingOracle,
    RoutingOracle,
    ScriptedOracle,
    click,
    navigate,
    ok,
    type_into,
    verdict,
)


def _rule(classification: str, step_index: int = 3) -> StepClassificationResult:
    return StepClassificationResult(
        step_index=step_index,
        is_necessary=classification == "necessary",
        classification=classification,
        reasoning="rule says so",
    )


def test_merge_keeps_rule_necessary_even_against_confident_oracle():
    rule = _rule("necessary")
    merged = merge_verdicts(rule, verdict(3, False, 0.99), 0.7)
    assert merged == rule


def test_merge_upgrades_agreeing_optimizable_to_hybrid():
    merged = merge_verdicts(_rule("optimizable"), verdict(3, False, 0.8, "menu toggle"), 0.7)
    assert merged.classification == "optimizable"
    assert merged.decision_method == "hybrid"
    assert merged.confidence == 0.8
    assert merged.reasoning == "rule says so; oracle confirms: menu toggle"


def test_merge_low_confidence_uncertain_defaults_to_necessary():
    merged = merge_verdicts(_rule("uncertain"), verdict(3, False, 0.5), 0.7)
    assert merged.classification == "necessary"
    assert merged.is_necessary
    assert merged.decision_method == "hybrid"
    assert merged.confidence == 0.5


def test_merge_confident_uncertain_follows_oracle():
    merged = merge_verdicts(_rule("uncertain"), verdict(3, False, 0.7, "opens a report"), 0.7)
    assert merged.classification == "optimizable"
    assert merged.decision_method == "ai-powered"
    assert merged.reasoning == "opens a report"

    merged = merge_verdicts(_rule("uncertain"), verdict(3, True, 0.95), 0.7)
    assert merged.classification == "necessary"
    assert merged.decision_method == "ai-powered"


def test_merge_confident_disagreement_lets_oracle_override():
    merged = merge_verdicts(_rule("optimizable"), verdict(3, True, 0.9, "toggles a setting"), 0.7)
    assert merged.classification == "necessary"
    assert merged.decision_method == "ai-powered"
    assert merged.reasoning.startswith("Oracle override")


def test_merge_weak_disagreement_keeps_rule_verdict():
    rule = _rule("optimizable")
    assert merge_verdicts(rule, verdict(3, True, 0.4), 0.7) == rule


def _ambiguous_sequence():
    steps = [
        click(U0, text="widget-42", selector="#widget-42"),
        click(U0, text="tile", selector="div.tile"),
        navigate(U1),
    ]
    (sequence,) = detect_navigation_sequences(steps)
    return sequence


@pytest.mark.asyncio
async def test_uncertain_steps_are_sent_in_one_batched_request():
    oracle = AgreeingOracle(confidence=0.9)
    classifier = HybridClassifier(oracle, OptimizerConfig())

    classified = await classifier.classify_sequence(_ambiguous_sequence())

    assert len(oracle.requests) == 1
    request = oracle.requests[0]
    assert request.sequence.step_count == 3
    assert request.sequence.start_url == U0
    assert request.sequence.end_url == U1
    assert [step.step_index for step in request.steps] == [0, 1, 2]
    assert [step.rule_based_classification for step in request.steps] == ["uncertain", "uncertain", "optimizable"]
    assert [c.classification for c in classified.step_classifications] == ["optimizable"] * 3
    assert classified.can_optimize


@pytest.mark.asyncio
async def test_oracle_not_called_when_rules_are_certain():
    oracle = AgreeingOracle()
    classifier = HybridClassifier(oracle, OptimizerConfig())
    (sequence,) = detect_navigation_sequences([click(U0, text="Menu"), navigate(U1)])

    classified = await classifier.classify_sequence(sequence)

    assert oracle.requests == []
    assert all(c.decision_method == "rule-based" for c in classified.step_classifications)


@pytest.mark.asyncio
async def test_disabled_oracle_keeps_uncertain_steps():
    oracle = AgreeingOracle()
    classifier = HybridClassifier(oracle, OptimizerConfig(use_oracle=False))

    classified = await classifier.classify_sequence(_ambiguous_sequence())

    assert oracle.requests == []
    first, second, last = classified.step_classifications
    assert first.classification == second.classification == "necessary"
    assert first.decision_method == "rule-based"
    assert last.classification == "optimizable"
    assert classified.necessary_steps == [0, 1]
    assert not classified.can_optimize


@pytest.mark.asyncio
async def test_consulting_without_an_oracle_is_a_transport_error():
    sequence = _ambiguous_sequence()
    request = build_oracle_request(sequence, [classify_step(step, i) for i, step in enumerate(sequence.steps)])
    classifier = HybridClassifier(None, OptimizerConfig())

    result = await classifier._consult_oracle(request, None)

    assert isinstance(result, OracleTransportError)
    assert result.message == "no oracle configured"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "oracle",
    [
        ScriptedOracle(lambda request: OracleTransportError(message="boom", status=503)),
        ScriptedOracle(lambda request: OracleInvalidResponse(message="not json")),
        ExplodingOracle(),
    ],
)
async def test_oracle_failure_resolves_uncertain_steps_to_necessary(oracle):
    classifier = HybridClassifier(oracle, OptimizerConfig())

    classified = await classifier.classify_sequence(_ambiguous_sequence())

    for result in classified.step_classifications[:2]:
        assert result.classification == "necessary"
        assert result.decision_method == "hybrid"
        assert result.confidence == 0.0
    assert not classified.can_optimize


@pytest.mark.asyncio
async def test_oracle_timeout_is_a_failure():
    oracle = HangingOracle()
    classifier = HybridClassifier(oracle, OptimizerConfig(oracle_timeout_s=0.05))

    classified = await classifier.classify_sequence(_ambiguous_sequence())
    await asyncio.sleep(0)

    assert all(c.is_necessary for c in classified.step_classifications[:2])
    assert "timed out" in classified.step_classifications[0].reasoning
    assert oracle.cancelled


@pytest.mark.asyncio
async def test_abort_signal_abandons_oracle_call():
    classifier = HybridClassifier(HangingOracle(), OptimizerConfig(oracle_timeout_s=30))
    abort = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, abort.set)

    classified = await asyncio.wait_for(classifier.classify_sequence(_ambiguous_sequence(), abort), timeout=5)

    assert all(c.is_necessary for c in classified.step_classifications[:2])
    assert "abandoned" in classified.step_classifications[0].reasoning


@pytest.mark.asyncio
async def test_uncertain_step_missing_from_response_is_kept():
    oracle = ScriptedOracle(lambda request: ok(verdict(1, False, 0.95)))
    classifier = HybridClassifier(oracle, OptimizerConfig())

    classified = await classifier.classify_sequence(_ambiguous_sequence())

    first, second, _ = classified.step_classifications
    assert first.classification == "necessary"
    assert second.classification == "optimizable"
    assert second.decision_method == "ai-powered"


@pytest.mark.asyncio
async def test_one_failing_sequence_does_not_affect_another():
    steps = [
        click(U0, text="widget-1", selector="#w1"),
        navigate(U1),
        type_into(U1, "title", "Q3"),
        click(U1, text="tile", selector="div.tile"),
        navigate(U2),
    ]
    sequences = detect_navigation_sequences(steps)
    oracle = RoutingOracle({U0: HangingOracle(), U1: AgreeingOracle(confidence=0.9)})
    classifier = HybridClassifier(oracle, OptimizerConfig(oracle_timeout_s=0.05))

    first, second = await classifier.classify_sequences(sequences)

    assert first.step_classifications[0].classification == "necessary"
    assert not first.can_optimize
    assert [c.classification for c in second.step_classifications] == [
        "optimizable",
        "necessary",
        "optimizable",
        "optimizable",
    ]
    assert second.can_optimize


@pytest.mark.asyncio
async def test_no_uncertain_verdict_survives_classification():
    oracle = ScriptedOracle(lambda request: ok(recommendation="keep"))
    classifier = HybridClassifier(oracle, OptimizerConfig())

    classified = await classifier.classify_sequence(_ambiguous_sequence())

    assert all(c.classification != "uncertain" for c in classified.step_classifications)


@pytest.mark.asyncio
async def test_event_logger_receives_classification_events():
    events = []
    classifier = HybridClassifier(AgreeingOracle(), OptimizerConfig())
    classifier.set_event_logger(events.append)

    await classifier.classify_sequence(_ambiguous_sequence())

    assert [event["event"] for event in events] == ["oracle_result", "sequence_classified"]
    assert events[0]["outcome"] == "OracleOk"
