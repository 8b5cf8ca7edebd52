"""Rewrite one classified navigation sequence into its optimized form."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .models import (
    DecisionMethod,
    ElementPayload,
    NavigationSequence,
    NavigationStep,
    OptimizationMapEntry,
    WorkflowStep,
)

logger = logging.getLogger(__name__)


@dataclass
class RewriteOutcome:
    steps: List[WorkflowStep] = field(default_factory=list)
    map_entries: List[OptimizationMapEntry] = field(default_factory=list)
    steps_removed: int = 0


def sequence_decision_method(
    sequence: NavigationSequence,
    step_indices: Optional[Iterable[int]] = None,
) -> DecisionMethod:
    wanted = set(step_indices) if step_indices is not None else None
    methods = {
        result.decision_method
        for result in sequence.step_classifications
        if wanted is None or result.step_index in wanted
    }
    if "ai-powered" in methods:
        return "ai-powered"
    if "hybrid" in methods:
        return "hybrid"
    return "rule-based"


def average_oracle_confidence(sequence: NavigationSequence, step_indices: List[int]) -> Optional[float]:
    wanted = set(step_indices)
    confidences = [
        result.confidence
        for result in sequence.step_classifications
        if result.step_index in wanted and result.decision_method != "rule-based" and result.confidence > 0
    ]
    if not confidences:
        return None
    return sum(confidences) / len(confidences)


def build_direct_navigation_step(url: str, destination: WorkflowStep) -> NavigationStep:
    """Synthetic step jumping straight to `url`; tab details come from the step recorded on that page."""
    payload = getattr(destination, "payload", None)
    if isinstance(payload, ElementPayload):
        timestamp, tab_url, tab_title, tab_info = payload.timestamp, payload.tab_url, payload.tab_title, payload.tab_info
    elif isinstance(payload, dict):
        timestamp = payload.get("timestamp") if isinstance(payload.get("timestamp"), int) else None
        tab_url, tab_title = payload.get("tabUrl"), payload.get("tabTitle")
        tab_info = payload.get("tabInfo") if isinstance(payload.get("tabInfo"), dict) else None
    else:
        timestamp = tab_url = tab_title = tab_info = None

    return NavigationStep(
        payload=ElementPayload(
            url=url,
            timestamp=timestamp,
            tab_url=tab_url,
            tab_title=tab_title,
            tab_info=tab_info,
        ),
        description=f"Navigate directly to {url}",
    )


def _run_reason(sequence: NavigationSequence, run: List[int], summary: str) -> tuple[str, DecisionMethod, Optional[float]]:
    decision_method = sequence_decision_method(sequence, run)
    ai_confidence = average_oracle_confidence(sequence, run)
    reason = f"{summary} ({decision_method}"
    if ai_confidence is not None:
        reason += f", oracle confidence {ai_confidence:.2f}"
    return reason + ")", decision_method, ai_confidence


def _close_run(
    sequence: NavigationSequence,
    run: List[int],
    destination: WorkflowStep,
    target_url: str,
    page_url: str,
    start_optimized_index: int,
    outcome: RewriteOutcome,
) -> str:
    """Replace a run of removable steps so replay lands on `target_url`; returns the new page URL."""
    if not run:
        return page_url

    run_steps = [sequence.steps[index - sequence.start_index] for index in run]

    if target_url == page_url:
        reason, decision_method, ai_confidence = _run_reason(
            sequence, run, f"Removed {len(run)} navigation steps that end on the current page"
        )
        outcome.steps_removed += len(run)
        outcome.map_entries.append(
            OptimizationMapEntry(
                original_indices=run,
                optimized_index=max(start_optimized_index + len(outcome.steps) - 1, -1),
                reason=reason,
                decision_method=decision_method,
                ai_confidence=ai_confidence,
            )
        )
        return page_url

    if len(run_steps) == 1 and isinstance(run_steps[0], NavigationStep) and run_steps[0].url == target_url:
        # Already the shortest path to the target page.
        classification = sequence.classification_for(run[0])
        outcome.steps.append(run_steps[0])
        outcome.map_entries.append(
            OptimizationMapEntry(
                original_indices=run,
                optimized_index=start_optimized_index + len(outcome.steps) - 1,
                reason=f"Already a direct navigation to {target_url}",
                decision_method=classification.decision_method if classification else "rule-based",
                ai_confidence=classification.confidence if classification else None,
            )
        )
        return target_url

    reason, decision_method, ai_confidence = _run_reason(
        sequence, run, f"Replaced {len(run)} navigation steps with direct URL navigation"
    )
    outcome.steps.append(build_direct_navigation_step(target_url, destination))
    outcome.steps_removed += len(run)
    outcome.map_entries.append(
        OptimizationMapEntry(
            original_indices=run,
            optimized_index=start_optimized_index + len(outcome.steps) - 1,
            reason=reason,
            decision_method=decision_method,
            ai_confidence=ai_confidence,
        )
    )
    return target_url


def rewrite_sequence(
    sequence: NavigationSequence,
    start_optimized_index: int,
    entry_url: Optional[str] = None,
) -> RewriteOutcome:
    """Drop the optimizable steps of a sequence, keeping necessary ones on the page they were recorded on.

    Each run of removed steps is replaced by at most one direct navigation to the
    page of the step that follows it (the end URL for a trailing run). `entry_url`
    is the page replay stands on before the sequence; it defaults to the start URL.
    """
    if len(sequence.steps) < 2:
        logger.debug("Sequence at %s is too short to rewrite; keeping it", sequence.start_index)
        return RewriteOutcome(steps=list(sequence.steps))

    outcome = RewriteOutcome()
    page_url = entry_url or sequence.start_url
    run: List[int] = []

    for offset, step in enumerate(sequence.steps):
        global_index = sequence.start_index + offset
        classification = sequence.classification_for(global_index)
        # A step without a verdict is kept.
        if classification is not None and not classification.is_necessary:
            run.append(global_index)
            continue

        step_url = getattr(step, "url", None) or page_url
        page_url = _close_run(sequence, run, step, step_url, page_url, start_optimized_index, outcome)
        run = []
        outcome.steps.append(step)
        outcome.map_entries.append(
            OptimizationMapEntry(
                original_indices=[global_index],
                optimized_index=start_optimized_index + len(outcome.steps) - 1,
                reason=classification.reasoning if classification else "Preserved step without a verdict",
                decision_method=classification.decision_method if classification else "rule-based",
                ai_confidence=classification.confidence if classification else None,
            )
        )
        page_url = step_url

    _close_run(sequence, run, sequence.steps[-1], sequence.end_url, page_url, start_optimized_index, outcome)

    logger.debug(
        "Rewrote sequence %s-%s: %s steps out, removed %s",
        sequence.start_index,
        sequence.end_index,
        len(outcome.steps),
        outcome.steps_removed,
    )
    return outcome
