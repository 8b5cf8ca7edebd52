"""Core data models for the navigation optimizer."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    CLICK = "CLICK"
    INPUT = "INPUT"
    NAVIGATION = "NAVIGATION"
    KEYBOARD = "KEYBOARD"
    SCROLL = "SCROLL"
    TAB_SWITCH = "TAB_SWITCH"


StepClassification = Literal["necessary", "optimizable", "uncertain"]
DecisionMethod = Literal["rule-based", "ai-powered", "hybrid"]


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase JSON as written by the recorder."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecordedModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ---------------------------------------------------------------------------
# Recorded steps
# ---------------------------------------------------------------------------


class FormContext(RecordedModel):
    form_id: Optional[str] = None
    fieldset: Optional[str] = None
    section: Optional[str] = None


class ContainerContext(RecordedModel):
    selector: Optional[str] = None
    text: Optional[str] = None
    type: Optional[str] = None
    index: Optional[int] = None


class StepContext(RecordedModel):
    form_context: Optional[FormContext] = None
    grid_context: Optional[Dict[str, Any]] = None
    container: Optional[ContainerContext] = None
    surrounding_text: Optional[str] = None


class AIEvidence(RecordedModel):
    clipboard_metadata: Optional[Dict[str, Any]] = None


class KeyboardDetails(RecordedModel):
    key: Optional[str] = None
    code: Optional[str] = None
    modifiers: Optional[List[str]] = None


class ElementPayload(RecordedModel):
    url: str
    selector: Optional[str] = None
    fallback_selectors: Optional[List[str]] = None
    xpath: Optional[str] = None
    label: Optional[str] = None
    value: Optional[str] = None
    timestamp: Optional[int] = None
    element_text: Optional[str] = None
    element_role: Optional[str] = None
    context: Optional[StepContext] = None
    input_details: Optional[Dict[str, Any]] = None
    ai_evidence: Optional[AIEvidence] = None
    tab_url: Optional[str] = None
    tab_title: Optional[str] = None
    tab_info: Optional[Dict[str, Any]] = None

    @property
    def form_context(self) -> Optional[FormContext]:
        return self.context.form_context if self.context else None

    @property
    def has_clipboard_data(self) -> bool:
        return bool(self.ai_evidence and self.ai_evidence.clipboard_metadata)


class KeyboardPayload(ElementPayload):
    keyboard_details: Optional[KeyboardDetails] = None


class TabSwitchPayload(RecordedModel):
    tab_id: Optional[int] = None
    tab_url: Optional[str] = None
    tab_title: Optional[str] = None
    timestamp: Optional[int] = None


class _ElementStep(RecordedModel):
    payload: ElementPayload
    description: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self.payload.url


class ClickStep(_ElementStep):
    type: Literal["CLICK"] = "CLICK"


class InputStep(_ElementStep):
    type: Literal["INPUT"] = "INPUT"


class NavigationStep(_ElementStep):
    type: Literal["NAVIGATION"] = "NAVIGATION"


class ScrollStep(_ElementStep):
    type: Literal["SCROLL"] = "SCROLL"


class KeyboardStep(_ElementStep):
    type: Literal["KEYBOARD"] = "KEYBOARD"
    payload: KeyboardPayload


class TabSwitchStep(RecordedModel):
    type: Literal["TAB_SWITCH"] = "TAB_SWITCH"
    payload: TabSwitchPayload = Field(default_factory=TabSwitchPayload)
    description: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return None


class UnrecognizedStep(RecordedModel):
    """A step whose tag or payload the optimizer does not understand; kept verbatim."""

    type: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        # Without a tag there is no way to tell what the step did.
        if not self.type:
            return None
        url = self.payload.get("url")
        return url if isinstance(url, str) and url else None


_ELEMENT_TAGS = {tag.value for tag in StepType if tag is not StepType.TAB_SWITCH}


def _step_tag(value: Any) -> str:
    if isinstance(value, BaseModel):
        tag = getattr(value, "type", None)
        if isinstance(value, UnrecognizedStep) or tag is None:
            return "unrecognized"
        return str(tag)
    if not isinstance(value, dict):
        return "unrecognized"
    tag = value.get("type")
    if isinstance(tag, StepType):
        tag = tag.value
    if tag == StepType.TAB_SWITCH.value:
        return tag
    if tag in _ELEMENT_TAGS:
        payload = value.get("payload")
        if isinstance(payload, dict) and isinstance(payload.get("url"), str):
            return tag
    return "unrecognized"


WorkflowStep = Annotated[
    Union[
        Annotated[ClickStep, Tag("CLICK")],
        Annotated[InputStep, Tag("INPUT")],
        Annotated[NavigationStep, Tag("NAVIGATION")],
        Annotated[KeyboardStep, Tag("KEYBOARD")],
        Annotated[ScrollStep, Tag("SCROLL")],
        Annotated[TabSwitchStep, Tag("TAB_SWITCH")],
        Annotated[UnrecognizedStep, Tag("unrecognized")],
    ],
    Discriminator(_step_tag),
]

ElementStep = Union[ClickStep, InputStep, NavigationStep, KeyboardStep, ScrollStep]

_STEP_LIST = TypeAdapter(List[WorkflowStep])


def parse_steps(raw: Any) -> List[WorkflowStep]:
    """Validate recorder JSON into typed steps; malformed steps become UnrecognizedStep."""
    return _STEP_LIST.validate_python(raw)


def dump_steps(steps: List[WorkflowStep]) -> List[Dict[str, Any]]:
    return _STEP_LIST.dump_python(steps, mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Classification and optimization results
# ---------------------------------------------------------------------------


def clamp_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return min(1.0, max(0.0, number))


class StepClassificationResult(CamelModel):
    step_index: int
    is_necessary: bool
    classification: StepClassification
    confidence: float = 1.0
    reasoning: str = ""
    decision_method: DecisionMethod = "rule-based"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_confidence(value)


class NavigationSequence(CamelModel):
    start_index: int
    end_index: int
    start_url: str
    end_url: str
    steps: List[WorkflowStep]
    can_optimize: bool = False
    necessary_steps: List[int] = Field(default_factory=list)
    step_classifications: List[StepClassificationResult] = Field(default_factory=list)

    def classification_for(self, step_index: int) -> Optional[StepClassificationResult]:
        for result in self.step_classifications:
            if result.step_index == step_index:
                return result
        return None


class OptimizationMapEntry(CamelModel):
    original_indices: List[int]
    optimized_index: int
    reason: str
    decision_method: DecisionMethod
    ai_confidence: Optional[float] = None


class OptimizationMetadata(CamelModel):
    analyzed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sequences_found: int = 0
    sequences_optimized: int = 0
    steps_removed: int = 0
    ai_analysis_used: bool = False
    ai_confidence_avg: Optional[float] = None
    optimization_map: List[OptimizationMapEntry] = Field(default_factory=list)


class OptimizationResult(CamelModel):
    optimized_steps: List[WorkflowStep]
    metadata: OptimizationMetadata


class SavedWorkflow(RecordedModel):
    id: str
    name: str
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    optimized_steps: Optional[List[WorkflowStep]] = None
    optimization_metadata: Optional[OptimizationMetadata] = None

    def steps_for_replay(self) -> List[WorkflowStep]:
        """Steps a replay engine should execute: the optimized array when one exists."""
        if self.optimized_steps is not None:
            return self.optimized_steps
        return self.steps
