"""Request/response contract for the semantic oracle that judges ambiguous steps."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence, Union

from pydantic import Field

from .models import (
    CamelModel,
    ElementPayload,
    NavigationSequence,
    StepClassification,
    StepClassificationResult,
    WorkflowStep,
    clamp_confidence,
)

logger = logging.getLogger(__name__)

OverallRecommendation = Literal["optimize", "keep", "partial"]


class InvalidOracleResponse(ValueError):
    """Raised when the oracle body cannot be interpreted as a verdict list."""


class SequenceSummary(CamelModel):
    start_url: str
    end_url: str
    step_count: int


class OracleStepSummary(CamelModel):
    type: str
    element_text: Optional[str] = None
    label: Optional[str] = None
    url: str
    form_context: Optional[Dict[str, Any]] = None
    input_details: Optional[Dict[str, Any]] = None
    has_clipboard_data: bool = False
    rule_based_classification: StepClassification
    step_index: int


class OracleRequest(CamelModel):
    sequence: SequenceSummary
    steps: List[OracleStepSummary]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OracleStepVerdict(CamelModel):
    step_index: int
    is_necessary: bool = True
    confidence: float = 0.0
    reasoning: str = ""


class OracleResponse(CamelModel):
    step_classifications: List[OracleStepVerdict] = Field(default_factory=list)
    overall_recommendation: OverallRecommendation = "keep"


# ---------------------------------------------------------------------------
# Outcome of one oracle call
# ---------------------------------------------------------------------------


@dataclass
class OracleOk:
    response: OracleResponse


@dataclass
class OracleTimedOut:
    timeout_s: float


@dataclass
class OracleTransportError:
    message: str
    status: Optional[int] = None


@dataclass
class OracleInvalidResponse:
    message: str


@dataclass
class OracleAborted:
    reason: str = "optimization aborted"


OracleFailure = Union[OracleTimedOut, OracleTransportError, OracleInvalidResponse, OracleAborted]
OracleResult = Union[OracleOk, OracleFailure]


def describe_failure(result: OracleFailure) -> str:
    if isinstance(result, OracleTimedOut):
        return f"oracle timed out after {result.timeout_s:g}s"
    if isinstance(result, OracleTransportError):
        status = f" (HTTP {result.status})" if result.status is not None else ""
        return f"oracle transport error{status}: {result.message}"
    if isinstance(result, OracleInvalidResponse):
        return f"oracle returned an invalid response: {result.message}"
    return f"oracle call abandoned: {result.reason}"


class NavigationOracle(Protocol):
    """Anything that can judge the uncertain steps of one sequence."""

    async def analyze(self, request: OracleRequest) -> OracleResult:
        ...


@dataclass
class OracleStats:
    """Advisory call counters; updated without locking."""

    calls: int = 0
    failures: int = 0
    total_latency_s: float = 0.0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def record(self, result: OracleResult, latency_s: float) -> None:
        self.calls += 1
        self.total_latency_s += latency_s
        name = type(result).__name__
        self.outcomes[name] = self.outcomes.get(name, 0) + 1
        if not isinstance(result, OracleOk):
            self.failures += 1

    @property
    def average_latency_s(self) -> float:
        return self.total_latency_s / self.calls if self.calls else 0.0


class TimedOracle:
    """Wrap an oracle so every call is counted in an OracleStats instance."""

    def __init__(self, oracle: NavigationOracle, stats: Optional[OracleStats] = None) -> None:
        self.oracle = oracle
        self.stats = stats or OracleStats()

    async def analyze(self, request: OracleRequest) -> OracleResult:
        started = time.perf_counter()
        result = await self.oracle.analyze(request)
        self.stats.record(result, time.perf_counter() - started)
        return result


# ---------------------------------------------------------------------------
# Building requests and reading responses
# ---------------------------------------------------------------------------


def summarize_step(step: WorkflowStep, rule_result: StepClassificationResult, step_index: int) -> OracleStepSummary:
    payload = getattr(step, "payload", None)
    element = payload if isinstance(payload, ElementPayload) else None
    form_context = element.form_context if element else None
    return OracleStepSummary(
        type=str(getattr(step, "type", None) or "UNKNOWN"),
        element_text=element.element_text if element else None,
        label=element.label if element else None,
        url=getattr(step, "url", None) or "",
        form_context=form_context.model_dump(by_alias=True, exclude_none=True) if form_context else None,
        input_details=element.input_details if element else None,
        has_clipboard_data=element.has_clipboard_data if element else False,
        rule_based_classification=rule_result.classification,
        step_index=step_index,
    )


def build_oracle_request(
    sequence: NavigationSequence,
    rule_results: Sequence[StepClassificationResult],
) -> OracleRequest:
    """One request per sequence; every step is summarized so the oracle sees the full chain."""
    return OracleRequest(
        sequence=SequenceSummary(
            start_url=sequence.start_url,
            end_url=sequence.end_url,
            step_count=len(sequence.steps),
        ),
        steps=[
            summarize_step(step, rule_results[offset], sequence.start_index + offset)
            for offset, step in enumerate(sequence.steps)
        ],
    )


def parse_oracle_response(body: Any) -> OracleResponse:
    """Validate an oracle body, defaulting missing fields toward keeping steps."""
    if not isinstance(body, dict):
        raise InvalidOracleResponse(f"expected a JSON object, got {type(body).__name__}")

    verdicts: List[OracleStepVerdict] = []
    raw_verdicts = body.get("stepClassifications")
    if isinstance(raw_verdicts, list):
        for entry in raw_verdicts:
            if not isinstance(entry, dict):
                continue
            step_index = entry.get("stepIndex")
            if isinstance(step_index, bool) or not isinstance(step_index, int):
                logger.debug("Skipping oracle verdict without a step index: %s", entry)
                continue
            is_necessary = entry.get("isNecessary")
            reasoning = entry.get("reasoning")
            verdicts.append(
                OracleStepVerdict(
                    step_index=step_index,
                    is_necessary=is_necessary if isinstance(is_necessary, bool) else True,
                    confidence=clamp_confidence(entry.get("confidence")),
                    reasoning=reasoning if isinstance(reasoning, str) else "",
                )
            )

    recommendation = body.get("overallRecommendation")
    if recommendation not in ("optimize", "keep", "partial"):
        recommendation = "keep"
    return OracleResponse(step_classifications=verdicts, overall_recommendation=recommendation)
