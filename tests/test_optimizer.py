import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from nav_optimizer.config import OptimizerConfig  # noqa: E402
from nav_optimizer.models import NavigationStep, SavedWorkflow, parse_steps  # noqa: E402
from nav_optimizer.optimizer import NavigationOptimizer  # noqa: E402
from nav_optimizer.rule_classifier import classify_step  # noqa: E402
from workflow_factories import (  # noqa: E402
    U0,
    U1,
    U2,
    HangingOracle,
    ScriptedOracle,
    click,
    navigate,
    ok,
    press,
    scroll,
    type_into,
    verdict,
)


def _optimizer(oracle=None, **config) -> NavigationOptimizer:
    return NavigationOptimizer(OptimizerConfig(**config), oracle)


@pytest.mark.asyncio
async def test_navigation_only_sequence_becomes_one_direct_navigation():
    steps = [click(U0, text="Dashboard", selector="nav a.dashboard"), navigate(U1, tab_title="Reports")]

    result = await _optimizer().optimize_steps(steps)

    (step,) = result.optimized_steps
    assert isinstance(step, NavigationStep)
    assert step.url == U1
    assert step.payload.selector is None
    assert step.description == f"Navigate directly to {U1}"
    meta = result.metadata
    assert (meta.sequences_found, meta.sequences_optimized, meta.steps_removed) == (1, 1, 2)
    assert not meta.ai_analysis_used
    assert meta.ai_confidence_avg is None
    (entry,) = meta.optimization_map
    assert entry.original_indices == [0, 1]
    assert entry.optimized_index == 0
    assert entry.decision_method == "rule-based"
    assert entry.reason == "Replaced 2 navigation steps with direct URL navigation (rule-based)"


@pytest.mark.asyncio
async def test_sequence_with_mostly_necessary_steps_is_untouched():
    steps = [
        type_into(U0, "name", "Bob"),
        click(U0, text="Submit", selector="button[type=submit]"),
        navigate(U1),
    ]

    result = await _optimizer().optimize_steps(steps)

    assert result.optimized_steps == steps
    assert result.metadata.sequences_found == 1
    assert result.metadata.sequences_optimized == 0
    assert result.metadata.steps_removed == 0
    assert result.metadata.optimization_map == []


@pytest.mark.asyncio
async def test_confident_oracle_lets_ambiguous_click_be_removed():
    oracle = ScriptedOracle(lambda request: ok(verdict(0, False, 0.85, "opens the widget page")))
    steps = [click(U0, text="widget-42", selector="#widget-42"), navigate(U1)]
    optimizer = _optimizer(oracle)

    result = await optimizer.optimize_steps(steps)

    (step,) = result.optimized_steps
    assert step.url == U1
    assert (optimizer.stats.calls, optimizer.stats.failures) == (1, 0)
    meta = result.metadata
    assert meta.ai_analysis_used
    assert meta.ai_confidence_avg == pytest.approx(0.85)
    (entry,) = meta.optimization_map
    assert entry.decision_method == "ai-powered"
    assert entry.ai_confidence == pytest.approx(0.85)
    assert entry.reason.endswith("(ai-powered, oracle confidence 0.85)")


@pytest.mark.asyncio
async def test_oracle_timeout_keeps_ambiguous_click():
    steps = [click(U0, text="widget-42", selector="#widget-42"), navigate(U1)]
    optimizer = _optimizer(HangingOracle(), oracle_timeout_s=0.05)

    result = await optimizer.optimize_steps(steps)

    assert result.optimized_steps == steps
    assert result.metadata.steps_removed == 0
    assert result.metadata.ai_analysis_used
    assert result.metadata.ai_confidence_avg is None


SAFETY_STEPS = [
    click(U0, text="Menu"),
    type_into(U0, "search", "invoices"),
    click(U0, text="Result", selector="a.result"),
    navigate(U1),
    scroll(U1),
    click(U1, text="Save", selector="button.primary"),
    press(U1, "Enter"),
    click(U1, text="Menu"),
    navigate(U2),
]

MENU_CHAIN_STEPS = [click(U0, text="Menu"), navigate(U1), click(U1, text="Menu"), navigate(U2)]

SAVE_ON_REPORTS_STEPS = [
    type_into(U0, "search", "invoices"),
    navigate(U1),
    scroll(U1),
    click(U1, text="Save", selector="button.primary"),
    click(U1, text="Menu"),
    navigate(U2),
]


def _replay_pages_match(steps) -> bool:
    """Every non-navigation step must replay on the page it was recorded on."""
    page = steps[0].url
    for step in steps:
        if isinstance(step, NavigationStep):
            page = step.url
        elif step.url != page:
            return False
    return True


@pytest.mark.asyncio
async def test_necessary_steps_survive_in_original_order():
    steps = SAFETY_STEPS

    result = await _optimizer().optimize_steps(steps)

    out = result.optimized_steps
    assert [step.type for step in out] == ["INPUT", "NAVIGATION", "CLICK", "KEYBOARD", "NAVIGATION"]
    assert [out[1].url, out[4].url] == [U1, U2]
    assert result.metadata.steps_removed == 6
    assert result.metadata.sequences_found == 2
    assert result.metadata.sequences_optimized == 2
    assert _replay_pages_match(out)

    necessary = [step for index, step in enumerate(steps) if classify_step(step, index).is_necessary]
    positions = [out.index(step) for step in necessary]
    assert positions == sorted(positions)

    entries = [(entry.original_indices, entry.optimized_index) for entry in result.metadata.optimization_map]
    assert entries == [([0], -1), ([1], 0), ([2, 3, 4], 1), ([5], 2), ([6], 3), ([7, 8], 4)]
    assert result.metadata.optimization_map[0].reason.startswith("Removed 1 navigation steps that end on the current page")


@pytest.mark.asyncio
async def test_chained_menu_navigation_collapses_to_last_page():
    result = await _optimizer().optimize_steps(MENU_CHAIN_STEPS)

    (step,) = result.optimized_steps
    assert step.url == U2
    assert result.metadata.steps_removed == 4
    assert result.metadata.sequences_found == 2
    assert result.metadata.sequences_optimized == 2
    (entry,) = result.metadata.optimization_map
    assert entry.original_indices == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_kept_step_replays_on_the_page_it_was_recorded_on():
    result = await _optimizer().optimize_steps(SAVE_ON_REPORTS_STEPS)

    out = result.optimized_steps
    assert [(step.type, step.url) for step in out] == [
        ("INPUT", U0),
        ("NAVIGATION", U1),
        ("CLICK", U1),
        ("NAVIGATION", U2),
    ]
    assert out[2] == SAVE_ON_REPORTS_STEPS[3]
    assert result.metadata.steps_removed == 4
    assert _replay_pages_match(out)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "steps",
    [SAFETY_STEPS, MENU_CHAIN_STEPS, SAVE_ON_REPORTS_STEPS],
    ids=["safety", "menu-chain", "save-on-reports"],
)
async def test_second_pass_over_multi_page_workflow_removes_nothing(steps):
    optimizer = _optimizer()

    first = await optimizer.optimize_steps(steps)
    second = await optimizer.optimize_steps(first.optimized_steps)

    assert second.metadata.steps_removed == 0
    assert second.optimized_steps == first.optimized_steps


@pytest.mark.asyncio
async def test_second_pass_over_optimized_steps_removes_nothing():
    steps = [
        click(U0, text="Reports", selector="nav a.reports"),
        navigate(U1),
        type_into(U1, "title", "Q3"),
        click(U1, text="Save"),
    ]
    optimizer = _optimizer()

    first = await optimizer.optimize_steps(steps)
    second = await optimizer.optimize_steps(first.optimized_steps)

    assert len(first.optimized_steps) == 3
    assert first.metadata.steps_removed == 2
    assert second.metadata.steps_removed == 0
    assert second.optimized_steps == first.optimized_steps


@pytest.mark.asyncio
async def test_direct_navigation_copies_tab_details_from_last_step():
    steps = parse_steps(
        [
            {"type": "CLICK", "payload": {"url": U0, "elementText": "Open reports", "selector": "#go"}},
            {
                "type": "NAVIGATION",
                "payload": {
                    "url": U1,
                    "timestamp": 1_700_000_123_000,
                    "tabInfo": {"id": 7, "index": 0},
                    "tabUrl": U1,
                    "tabTitle": "Reports",
                },
            },
        ]
    )

    result = await _optimizer().optimize_steps(steps)

    (step,) = result.optimized_steps
    assert step.payload.url == U1
    assert step.payload.timestamp == 1_700_000_123_000
    assert step.payload.tab_info == {"id": 7, "index": 0}
    assert step.payload.tab_title == "Reports"


@pytest.mark.asyncio
async def test_workflow_without_sequences_is_returned_as_is():
    steps = [type_into(U0, "q", "x"), click(U0, text="Save")]

    result = await _optimizer().optimize_steps(steps)

    assert result.optimized_steps == steps
    assert result.metadata.sequences_found == 0


@pytest.mark.asyncio
async def test_optimize_workflow_stores_result_for_replay():
    workflow = SavedWorkflow(
        id="wf-1",
        name="Open reports",
        created_at=1_700_000_000_000,
        steps=[click(U0, text="Menu"), navigate(U1), type_into(U1, "title", "Q3")],
    )
    events = []
    optimizer = _optimizer()
    optimizer.set_event_logger(events.append)

    optimized = await optimizer.optimize_workflow(workflow)

    assert workflow.optimized_steps is None
    assert optimized.steps == workflow.steps
    assert [step.type for step in optimized.steps_for_replay()] == ["NAVIGATION", "INPUT"]
    assert optimized.optimization_metadata.steps_removed == 2
    assert optimized.updated_at is not None
    assert events[-1]["event"] == "run_complete"
    assert events[-1]["steps_out"] == 2


@pytest.mark.asyncio
async def test_abort_before_start_keeps_uncertain_steps():
    oracle = ScriptedOracle(lambda request: ok(verdict(0, False, 0.99)))
    abort = asyncio.Event()
    abort.set()
    steps = [click(U0, text="widget-42", selector="#widget-42"), navigate(U1)]

    result = await _optimizer(oracle).optimize_steps(steps, abort)

    assert oracle.requests == []
    assert result.optimized_steps == steps
