"""Splice rewritten sequences back into the workflow and aggregate run metadata."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from .models import (
    NavigationSequence,
    OptimizationMapEntry,
    OptimizationMetadata,
    OptimizationResult,
    StepClassificationResult,
    WorkflowStep,
)
from .rewriter import rewrite_sequence

logger = logging.getLogger(__name__)


def chain_optimizable_sequences(
    classified_sequences: Sequence[NavigationSequence],
) -> List[List[NavigationSequence]]:
    """Group optimizable sequences that touch each other, in workflow order.

    Consecutive sequences share their boundary step, so an optimizable
    sequence starting inside the previous group joins it.
    """
    chains: List[List[NavigationSequence]] = []
    for sequence in sorted(classified_sequences, key=lambda s: s.start_index):
        if not sequence.can_optimize:
            continue
        if chains and sequence.start_index <= chains[-1][-1].end_index:
            chains[-1].append(sequence)
        else:
            chains.append([sequence])
    return chains


def merge_chain(chain: Sequence[NavigationSequence], original_steps: Sequence[WorkflowStep]) -> NavigationSequence:
    if len(chain) == 1:
        return chain[0]
    first, last = chain[0], chain[-1]

    # The later sequence's verdict wins on a shared boundary step.
    by_index: Dict[int, StepClassificationResult] = {}
    for sequence in chain:
        for result in sequence.step_classifications:
            by_index[result.step_index] = result
    classifications = [by_index[index] for index in sorted(by_index)]

    return NavigationSequence(
        start_index=first.start_index,
        end_index=last.end_index,
        start_url=first.start_url,
        end_url=last.end_url,
        steps=list(original_steps[first.start_index : last.end_index + 1]),
        can_optimize=True,
        necessary_steps=[result.step_index - first.start_index for result in classifications if result.is_necessary],
        step_classifications=classifications,
    )


def assemble_optimized_workflow(
    original_steps: Sequence[WorkflowStep],
    classified_sequences: Sequence[NavigationSequence],
) -> OptimizationResult:
    optimized_steps: List[WorkflowStep] = []
    optimization_map: List[OptimizationMapEntry] = []
    sequences_optimized = 0
    steps_removed = 0

    chains = {chain[0].start_index: chain for chain in chain_optimizable_sequences(classified_sequences)}

    index = 0
    while index < len(original_steps):
        chain = chains.get(index)
        if chain is None:
            optimized_steps.append(original_steps[index])
            index += 1
            continue

        merged = merge_chain(chain, original_steps)
        entry_url: Optional[str] = getattr(optimized_steps[-1], "url", None) if optimized_steps else None
        outcome = rewrite_sequence(merged, len(optimized_steps), entry_url=entry_url)
        optimized_steps.extend(outcome.steps)
        optimization_map.extend(outcome.map_entries)
        if outcome.steps_removed > 0:
            sequences_optimized += len(chain)
            steps_removed += outcome.steps_removed
        index = merged.end_index + 1

    ai_used = False
    confidences: List[float] = []
    for sequence in classified_sequences:
        for result in sequence.step_classifications:
            if result.decision_method == "rule-based":
                continue
            ai_used = True
            if result.confidence > 0:
                confidences.append(result.confidence)

    metadata = OptimizationMetadata(
        sequences_found=len(classified_sequences),
        sequences_optimized=sequences_optimized,
        steps_removed=steps_removed,
        ai_analysis_used=ai_used,
        ai_confidence_avg=sum(confidences) / len(confidences) if confidences else None,
        optimization_map=optimization_map,
    )
    logger.debug(
        "Assembled %s steps from %s (%s sequences optimized)",
        len(optimized_steps),
        len(original_steps),
        sequences_optimized,
    )
    return OptimizationResult(optimized_steps=optimized_steps, metadata=metadata)
