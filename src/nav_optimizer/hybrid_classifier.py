"""Hybrid classifier that runs the rule table, then consults the oracle for uncertain steps."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence

from .config import OptimizerConfig
from .models import DecisionMethod, NavigationSequence, StepClassificationResult
from .oracle import (
    NavigationOracle,
    OracleAborted,
    OracleOk,
    OracleRequest,
    OracleResult,
    OracleStepVerdict,
    OracleTimedOut,
    OracleTransportError,
    build_oracle_request,
    describe_failure,
)
from .rule_classifier import classify_step

logger = logging.getLogger(__name__)


def merge_verdicts(
    rule_result: StepClassificationResult,
    verdict: OracleStepVerdict,
    confidence_threshold: float,
) -> StepClassificationResult:
    """Combine a rule verdict with an oracle verdict; rule-necessary steps always win."""
    if rule_result.classification == "necessary":
        return rule_result

    if rule_result.classification == "optimizable" and not verdict.is_necessary:
        return StepClassificationResult(
            step_index=rule_result.step_index,
            is_necessary=False,
            classification="optimizable",
            confidence=verdict.confidence,
            reasoning=f"{rule_result.reasoning}; oracle confirms: {verdict.reasoning}",
            decision_method="hybrid",
        )

    if rule_result.classification == "uncertain":
        if verdict.confidence < confidence_threshold:
            return StepClassificationResult(
                step_index=rule_result.step_index,
                is_necessary=True,
                classification="necessary",
                confidence=verdict.confidence,
                reasoning=(
                    f"Oracle confidence ({verdict.confidence * 100:.0f}%) below threshold - keeping step for safety"
                ),
                decision_method="hybrid",
            )
        return StepClassificationResult(
            step_index=rule_result.step_index,
            is_necessary=verdict.is_necessary,
            classification="necessary" if verdict.is_necessary else "optimizable",
            confidence=verdict.confidence,
            reasoning=verdict.reasoning,
            decision_method="ai-powered",
        )

    if verdict.confidence >= confidence_threshold:
        return StepClassificationResult(
            step_index=rule_result.step_index,
            is_necessary=verdict.is_necessary,
            classification="necessary" if verdict.is_necessary else "optimizable",
            confidence=verdict.confidence,
            reasoning=f"Oracle override: {verdict.reasoning}",
            decision_method="ai-powered",
        )

    return rule_result


def keep_for_safety(
    result: StepClassificationResult,
    reason: str,
    decision_method: DecisionMethod,
    confidence: float,
) -> StepClassificationResult:
    return StepClassificationResult(
        step_index=result.step_index,
        is_necessary=True,
        classification="necessary",
        confidence=confidence,
        reasoning=f"{result.reasoning}; {reason} - keeping step for safety",
        decision_method=decision_method,
    )


def finalize_sequence(
    sequence: NavigationSequence,
    classifications: Sequence[StepClassificationResult],
) -> NavigationSequence:
    necessary_steps = [offset for offset, result in enumerate(classifications) if result.is_necessary]
    optimizable_count = sum(1 for result in classifications if result.classification == "optimizable")
    can_optimize = optimizable_count > 0 and len(necessary_steps) < len(sequence.steps) - 1
    return sequence.model_copy(
        update={
            "can_optimize": can_optimize,
            "necessary_steps": necessary_steps,
            "step_classifications": list(classifications),
        }
    )


class HybridClassifier:
    """Classify every step of a sequence so that none is left uncertain."""

    def __init__(self, oracle: Optional[NavigationOracle], config: Optional[OptimizerConfig] = None) -> None:
        self.oracle = oracle
        self.config = config or OptimizerConfig()
        self._event_logger: Optional[Callable[[Dict[str, object]], None]] = None

    def set_event_logger(self, callback: Optional[Callable[[Dict[str, object]], None]]) -> None:
        """Attach a telemetry callback for classification events."""
        self._event_logger = callback

    @property
    def oracle_enabled(self) -> bool:
        return self.oracle is not None and self.config.use_oracle

    async def classify_sequences(
        self,
        sequences: Sequence[NavigationSequence],
        abort: Optional[asyncio.Event] = None,
    ) -> List[NavigationSequence]:
        return list(await asyncio.gather(*(self.classify_sequence(sequence, abort) for sequence in sequences)))

    async def classify_sequence(
        self,
        sequence: NavigationSequence,
        abort: Optional[asyncio.Event] = None,
    ) -> NavigationSequence:
        rule_results = [
            classify_step(step, sequence.start_index + offset) for offset, step in enumerate(sequence.steps)
        ]
        classifications = list(rule_results)
        uncertain = [offset for offset, result in enumerate(rule_results) if result.classification == "uncertain"]

        if uncertain and not self.oracle_enabled:
            for offset in uncertain:
                classifications[offset] = keep_for_safety(
                    classifications[offset], "oracle disabled", decision_method="rule-based", confidence=1.0
                )
        elif uncertain:
            request = build_oracle_request(sequence, rule_results)
            result = await self._consult_oracle(request, abort)
            failure_reason = "oracle returned no verdict for this step"
            if isinstance(result, OracleOk):
                verdicts = {verdict.step_index: verdict for verdict in result.response.step_classifications}
                for offset, current in enumerate(classifications):
                    verdict = verdicts.get(current.step_index)
                    if verdict is not None:
                        classifications[offset] = merge_verdicts(
                            current, verdict, self.config.confidence_threshold
                        )
                logger.debug(
                    "Oracle recommendation for %s-%s: %s",
                    sequence.start_index,
                    sequence.end_index,
                    result.response.overall_recommendation,
                )
            else:
                failure_reason = describe_failure(result)
                logger.warning(
                    "Oracle failed for sequence %s-%s (%s); falling back to rules",
                    sequence.start_index,
                    sequence.end_index,
                    failure_reason,
                )
            for offset, current in enumerate(classifications):
                if current.classification == "uncertain":
                    classifications[offset] = keep_for_safety(
                        current, failure_reason, decision_method="hybrid", confidence=0.0
                    )
            self._emit(
                {
                    "event": "oracle_result",
                    "start_index": sequence.start_index,
                    "end_index": sequence.end_index,
                    "uncertain_steps": len(uncertain),
                    "outcome": type(result).__name__,
                }
            )

        classified = finalize_sequence(sequence, classifications)
        for result in classified.step_classifications:
            logger.debug(
                "Step %s: %s (%s, %.2f) %s",
                result.step_index,
                result.classification,
                result.decision_method,
                result.confidence,
                result.reasoning,
            )
        self._emit(
            {
                "event": "sequence_classified",
                "start_index": classified.start_index,
                "end_index": classified.end_index,
                "can_optimize": classified.can_optimize,
                "necessary_steps": classified.necessary_steps,
            }
        )
        return classified

    async def _consult_oracle(self, request: OracleRequest, abort: Optional[asyncio.Event]) -> OracleResult:
        if self.oracle is None:
            return OracleTransportError(message="no oracle configured")

        if abort is not None and abort.is_set():
            return OracleAborted()

        timeout_s = self.config.oracle_timeout_s
        call = asyncio.ensure_future(self.oracle.analyze(request))
        abort_wait = asyncio.ensure_future(abort.wait()) if abort is not None else None
        waiters = {call} if abort_wait is None else {call, abort_wait}
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
            if call not in done:
                if abort is not None and abort.is_set():
                    return OracleAborted()
                return OracleTimedOut(timeout_s=timeout_s)
            exc = call.exception()
            if exc is not None:
                logger.warning("Oracle raised %s: %s", type(exc).__name__, exc)
                return OracleTransportError(message=str(exc) or type(exc).__name__)
            return call.result()
        finally:
            if not call.done():
                call.cancel()
            if abort_wait is not None:
                abort_wait.cancel()

    def _emit(self, event: Dict[str, object]) -> None:
        if self._event_logger:
            self._event_logger(event)
