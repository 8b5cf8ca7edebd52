"""Deterministic rule table deciding whether a recorded step only exists to navigate."""

from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from .models import (
    ClickStep,
    ElementPayload,
    InputStep,
    KeyboardStep,
    NavigationStep,
    ScrollStep,
    StepClassification,
    StepClassificationResult,
    TabSwitchStep,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

# Matches an anchor type selector such as `a`, `a.nav-link`, `a#home` or `main > a[href]`.
_ANCHOR_SELECTOR = re.compile(r"(?:^|[\s>+~])a(?:$|[.#\[:])")

NAVIGATION_KEYS = frozenset({"tab", "escape", "arrowdown", "arrowup", "arrowleft", "arrowright"})

NAVIGATION_KEYWORDS = (
    "menu",
    "nav",
    "navigation",
    "dropdown",
    "expand",
    "collapse",
    "more",
    "show more",
    "toggle",
    "open",
    "close",
    "hamburger",
)

MENU_SELECTOR_PATTERNS = (
    "menu",
    "dropdown",
    "nav",
    "sidebar",
    "header",
    '[role="menu"]',
    '[role="menuitem"]',
    '[role="navigation"]',
    "mat-menu",
    "md-menu",
    "ant-menu",
    "chakra-menu",
)

ACTION_KEYWORDS = (
    "submit",
    "save",
    "create",
    "delete",
    "remove",
    "add",
    "update",
    "confirm",
    "cancel",
    "send",
    "upload",
    "download",
    "export",
    "import",
)


def _verdict(step_index: int, classification: StepClassification, reasoning: str) -> StepClassificationResult:
    return StepClassificationResult(
        step_index=step_index,
        is_necessary=classification == "necessary",
        classification=classification,
        confidence=1.0,
        reasoning=reasoning,
        decision_method="rule-based",
    )


def _first_keyword(keywords: Sequence[str], *texts: str) -> Optional[str]:
    for keyword in keywords:
        if any(keyword in text for text in texts if text):
            return keyword
    return None


def _is_link_selector(selector: str, role: str) -> bool:
    return role == "link" or bool(_ANCHOR_SELECTOR.search(selector))


def classify_click(payload: ElementPayload, step_index: int = -1) -> StepClassificationResult:
    element_text = (payload.element_text or "").lower()
    label = (payload.label or "").lower()
    role = (payload.element_role or "").lower()
    selector = (payload.selector or "").strip().lower()

    keyword = _first_keyword(NAVIGATION_KEYWORDS, element_text, label, role)
    if keyword:
        return _verdict(step_index, "optimizable", f"Click on navigation element (contains: {keyword})")

    if _first_keyword(MENU_SELECTOR_PATTERNS, selector):
        return _verdict(step_index, "optimizable", "Click on menu/navigation selector pattern")

    if _is_link_selector(selector, role):
        return _verdict(step_index, "optimizable", "Click on link element - can be replaced with direct navigation")

    keyword = _first_keyword(ACTION_KEYWORDS, element_text, label)
    if keyword:
        return _verdict(step_index, "necessary", f"Click on action button (contains: {keyword})")

    return _verdict(step_index, "uncertain", "Generic click - cannot determine from rules if it modifies state")


def classify_step(step: WorkflowStep, step_index: int = -1) -> StepClassificationResult:
    """Classify one step with the rule table; the first matching rule wins."""
    if isinstance(step, TabSwitchStep):
        return _verdict(step_index, "optimizable", "Tab switch only exists for navigation bookkeeping")

    if isinstance(step, InputStep):
        return _verdict(step_index, "necessary", "INPUT step - form field interaction that must be preserved")

    payload = getattr(step, "payload", None)
    if isinstance(payload, ElementPayload):
        if payload.input_details:
            return _verdict(step_index, "necessary", "Step has input details - indicates form interaction")
        if payload.form_context is not None:
            return _verdict(step_index, "necessary", "Step is within a form context")
        if payload.has_clipboard_data:
            return _verdict(step_index, "necessary", "Step involves clipboard operations (copy/paste)")

    if isinstance(step, KeyboardStep):
        details = step.payload.keyboard_details
        key = ((details.key if details else None) or "").lower()
        if key not in NAVIGATION_KEYS:
            return _verdict(step_index, "necessary", f"KEYBOARD step with non-navigation key ({key or 'unknown'})")

    if isinstance(step, NavigationStep):
        return _verdict(step_index, "optimizable", "NAVIGATION step - can be replaced with direct URL navigation")

    if isinstance(step, ScrollStep):
        return _verdict(step_index, "optimizable", "SCROLL step - usually just for navigation UI visibility")

    if isinstance(step, ClickStep):
        return classify_click(step.payload, step_index)

    logger.debug("No rule matched step %s (%s)", step_index, getattr(step, "type", None))
    return _verdict(step_index, "uncertain", "Could not determine step necessity from rules alone")
