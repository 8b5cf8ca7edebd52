"""Navigation optimizer: detect, classify and rewrite navigation sequences."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Sequence

from .assembler import assemble_optimized_workflow
from .config import OptimizerConfig
from .hybrid_classifier import HybridClassifier
from .models import OptimizationResult, SavedWorkflow, WorkflowStep
from .oracle import NavigationOracle, OracleStats, TimedOracle
from .sequence_detector import detect_navigation_sequences

logger = logging.getLogger(__name__)


class NavigationOptimizer:
    """Replace click/menu/scroll chains that only change the URL with one direct navigation."""

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        oracle: Optional[NavigationOracle] = None,
    ) -> None:
        self.config = config or OptimizerConfig()
        self.stats = OracleStats()
        timed = TimedOracle(oracle, self.stats) if oracle is not None else None
        self.classifier = HybridClassifier(timed, self.config)
        self._event_logger: Optional[Callable[[Dict[str, object]], None]] = None

    def set_event_logger(self, callback: Optional[Callable[[Dict[str, object]], None]]) -> None:
        self._event_logger = callback
        self.classifier.set_event_logger(callback)

    async def optimize_steps(
        self,
        steps: Sequence[WorkflowStep],
        abort: Optional[asyncio.Event] = None,
    ) -> OptimizationResult:
        logger.info("Analyzing workflow with %s steps", len(steps))
        sequences = detect_navigation_sequences(steps)
        logger.info("Found %s navigation sequences", len(sequences))

        classified = await self.classifier.classify_sequences(sequences, abort)
        result = assemble_optimized_workflow(steps, classified)

        metadata = result.metadata
        logger.info(
            "Optimization complete - %s steps removed across %s sequences (oracle used: %s)",
            metadata.steps_removed,
            metadata.sequences_optimized,
            metadata.ai_analysis_used,
        )
        if self.stats.calls:
            logger.info(
                "Oracle calls: %s (%s failed, avg %.2fs)",
                self.stats.calls,
                self.stats.failures,
                self.stats.average_latency_s,
            )
        if self._event_logger:
            self._event_logger(
                {
                    "event": "run_complete",
                    "steps_in": len(steps),
                    "steps_out": len(result.optimized_steps),
                    "sequences_found": metadata.sequences_found,
                    "sequences_optimized": metadata.sequences_optimized,
                    "steps_removed": metadata.steps_removed,
                    "ai_analysis_used": metadata.ai_analysis_used,
                }
            )
        return result

    async def optimize_workflow(
        self,
        workflow: SavedWorkflow,
        abort: Optional[asyncio.Event] = None,
    ) -> SavedWorkflow:
        """Return a copy of the workflow carrying its optimized steps and metadata."""
        result = await self.optimize_steps(workflow.steps, abort)
        return workflow.model_copy(
            update={
                "optimized_steps": result.optimized_steps,
                "optimization_metadata": result.metadata,
                "updated_at": int(datetime.now(timezone.utc).timestamp() * 1000),
            }
        )
