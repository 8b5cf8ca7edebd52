"""CLI entrypoint for the navigation optimizer."""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from nav_optimizer.config import OPENAI_MODEL, OptimizerConfig
from nav_optimizer.endpoint_oracle import EndpointOracle
from nav_optimizer.llm_oracle import LLMOracle
from nav_optimizer.optimizer import NavigationOptimizer
from nav_optimizer.oracle import NavigationOracle
from nav_optimizer.oracle_cache import CachingOracle
from nav_optimizer.telemetry import OptimizationTelemetry
from nav_optimizer.workflow_store import WorkflowStoreError, load_workflow_file, write_workflow_file


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collapse navigation-only steps of a recorded workflow.")
    parser.add_argument("--workflow", required=True, help="Saved workflow JSON file to optimize.")
    parser.add_argument("--out", help="Where to write the optimized workflow (defaults to overwriting --workflow).")
    parser.add_argument("--no-oracle", action="store_true", help="Use the rule table only.")
    parser.add_argument(
        "--oracle",
        choices=("endpoint", "llm"),
        default="endpoint",
        help="Oracle backend for uncertain steps: the hosted analysis function or an OpenAI model.",
    )
    parser.add_argument("--model", default=OPENAI_MODEL, help="OpenAI model used by the llm oracle.")
    parser.add_argument("--threshold", type=float, help="Minimum oracle confidence to trust a verdict.")
    parser.add_argument("--timeout", type=float, help="Oracle timeout in seconds.")
    parser.add_argument("--telemetry", help="Optional JSONL file receiving optimizer events.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    log_file = _configure_logging(args.log_level)
    logging.info("Log file: %s", log_file)
    config = _build_config(args)
    workflow_path = Path(args.workflow).expanduser()
    out_path = Path(args.out).expanduser() if args.out else workflow_path

    try:
        workflow = load_workflow_file(workflow_path)
    except WorkflowStoreError as exc:
        raise SystemExit(str(exc)) from exc

    optimizer = NavigationOptimizer(config=config, oracle=_build_oracle(args, config))
    telemetry = OptimizationTelemetry(Path(args.telemetry).expanduser()) if args.telemetry else None
    if telemetry:
        optimizer.set_event_logger(telemetry.write)
    try:
        optimized = asyncio.run(optimizer.optimize_workflow(workflow))
    finally:
        if telemetry:
            telemetry.close()

    write_workflow_file(out_path, optimized)
    metadata = optimized.optimization_metadata
    if metadata is not None:
        print(
            f"{workflow.name}: {len(workflow.steps)} -> {len(optimized.steps_for_replay())} steps "
            f"({metadata.steps_removed} removed, {metadata.sequences_optimized}/{metadata.sequences_found} "
            f"sequences optimized)"
        )
    print(f"Wrote {out_path}")


def _build_config(args: argparse.Namespace) -> OptimizerConfig:
    overrides = {"use_oracle": not args.no_oracle}
    if args.threshold is not None:
        overrides["confidence_threshold"] = args.threshold
    if args.timeout is not None:
        overrides["oracle_timeout_s"] = args.timeout
    return OptimizerConfig.from_env(**overrides)


def _build_oracle(args: argparse.Namespace, config: OptimizerConfig) -> Optional[NavigationOracle]:
    if not config.use_oracle:
        return None
    oracle: Optional[NavigationOracle]
    if args.oracle == "llm":
        oracle = LLMOracle.from_config(config, model=args.model)
        if oracle is None:
            logging.warning("OPENAI_API_KEY missing; uncertain steps will be kept")
    else:
        oracle = EndpointOracle.from_config(config)
        if oracle is None:
            logging.warning("NAV_ORACLE_URL missing; uncertain steps will be kept")
    if oracle is None:
        return None
    return CachingOracle(oracle, ttl_s=config.cache_ttl_s)


def _configure_logging(log_level: str) -> Path:
    level = getattr(logging, log_level.upper(), logging.INFO)
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / f"nav-optimizer-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=[stream_handler, file_handler])
    return log_file


if __name__ == "__main__":
    main()
