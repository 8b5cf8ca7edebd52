"""Detect runs of recorded steps that end in a URL change."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .models import NavigationSequence, WorkflowStep

logger = logging.getLogger(__name__)


@dataclass
class _OpenRun:
    start_index: int
    start_url: str
    steps: List[WorkflowStep] = field(default_factory=list)


def step_url(step: WorkflowStep) -> Optional[str]:
    """Effective page URL of a step, or None when the step carries no navigable context."""
    return getattr(step, "url", None)


def detect_navigation_sequences(steps: Sequence[WorkflowStep]) -> List[NavigationSequence]:
    sequences: List[NavigationSequence] = []
    current: Optional[_OpenRun] = None

    for index, step in enumerate(steps):
        url = step_url(step)
        if url is None:
            # Tab switches and untagged steps end the run without navigating.
            current = None
            continue

        if current is None:
            current = _OpenRun(start_index=index, start_url=url, steps=[step])
            continue

        previous_url = step_url(steps[index - 1]) if index > 0 else None
        if previous_url is None:
            previous_url = current.start_url

        current.steps.append(step)
        if url == previous_url:
            continue

        sequences.append(
            NavigationSequence(
                start_index=current.start_index,
                end_index=index,
                start_url=current.start_url,
                end_url=url,
                steps=list(current.steps),
            )
        )
        current = _OpenRun(start_index=index, start_url=url, steps=[step])

    detected = [sequence for sequence in sequences if len(sequence.steps) > 1]
    logger.debug("Detected %s navigation sequences in %s steps", len(detected), len(steps))
    return detected
