from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog

from loadgen import SUPPORTED_APIS
from report import TrialResult, print_results
from runner import DEFAULT_MODELS, ConfigurationError, RunConfig, run_load_test

logger = structlog.get_logger()


def configure_logging(level: str = "info") -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _parse_models(value: str) -> list[str]:
    models = [part.strip() for part in value.split(",") if part.strip()]
    if not models:
        raise argparse.ArgumentTypeError("--models cannot be empty")
    return models


def _parse_concurrencies(value: str) -> list[int]:
    if not value.strip():
        raise argparse.ArgumentTypeError("--concurrencies cannot be empty")
    parts = [part.strip() for part in value.split(",") if part.strip()]
    levels: list[int] = []
    for part in parts:
        try:
            parsed = int(part)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(
                f"Invalid concurrency level '{part}'. Expected comma-separated integers."
            ) from exc
        if parsed <= 0:
            raise argparse.ArgumentTypeError(f"Concurrency levels must be > 0, got {parsed}.")
        levels.append(parsed)
    if not levels:
        raise argparse.ArgumentTypeError("--concurrencies cannot be empty")
    return levels


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Run a (model x concurrency) load-test matrix against an inference "
            "service while sampling host CPU, memory and GPU usage."
        )
    )

    parser.add_argument("--base-url", default="http://localhost:11434")
    parser.add_argument("--api", choices=list(SUPPORTED_APIS), default="ollama")
    parser.add_argument("--api-key", default=None)

    parser.add_argument(
        "--models",
        type=_parse_models,
        default=list(DEFAULT_MODELS),
        help="Comma-separated model names, e.g. deepseek-r1:7b,deepseek-r1:14b",
    )
    parser.add_argument(
        "--concurrencies",
        type=_parse_concurrencies,
        default=_parse_concurrencies("1,2,3,4,5,6"),
        help="Comma-separated concurrency levels, e.g. 1,2,4,8",
    )
    parser.add_argument("--trial-duration-s", type=float, default=30.0)
    parser.add_argument("--cooldown-s", type=float, default=10.0)
    parser.add_argument("--sample-interval-s", type=float, default=1.0)
    parser.add_argument("--request-timeout-s", type=float, default=60.0)
    parser.add_argument(
        "--drain-timeout-s",
        type=float,
        default=None,
        help="Grace period for in-flight requests after a trial deadline (default: request timeout).",
    )

    parser.add_argument(
        "--prompt-text",
        dest="prompts",
        action="append",
        default=[],
        help="Prompt to send; repeat for several. Defaults to the built-in prompt set.",
    )
    parser.add_argument("--prompt-file", type=Path, default=None)
    parser.add_argument("--gpu", dest="query_gpu", action=argparse.BooleanOptionalAction, default=True)

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument("--no-artifacts", dest="write_artifacts", action="store_false")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument(
        "--log-level", choices=["debug", "info", "warning", "error"], default="info"
    )
    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.trial_duration_s <= 0:
        parser.error("--trial-duration-s must be > 0")
    if args.cooldown_s < 0:
        parser.error("--cooldown-s must be >= 0")
    if args.sample_interval_s <= 0:
        parser.error("--sample-interval-s must be > 0")
    if args.request_timeout_s <= 0:
        parser.error("--request-timeout-s must be > 0")
    if args.drain_timeout_s is not None and args.drain_timeout_s < 0:
        parser.error("--drain-timeout-s must be >= 0")
    if args.prompt_file is not None and not args.prompt_file.exists():
        parser.error(f"--prompt-file not found: {args.prompt_file}")


def config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        base_url=args.base_url,
        api=args.api,
        api_key=args.api_key,
        models=args.models,
        concurrencies=args.concurrencies,
        trial_duration_s=args.trial_duration_s,
        cooldown_s=args.cooldown_s,
        sample_interval_s=args.sample_interval_s,
        request_timeout_s=args.request_timeout_s,
        drain_timeout_s=args.drain_timeout_s,
        prompts=list(args.prompts),
        prompt_file=args.prompt_file,
        query_gpu=bool(args.query_gpu),
        seed=args.seed,
        output_dir=args.output_dir,
        run_name=args.run_name,
        write_artifacts=bool(args.write_artifacts),
    )


def _announce(result: TrialResult) -> None:
    print(
        f"Finished {result.config.workload_id} @ concurrency {result.config.concurrency}: "
        f"{result.total_requests} requests, {result.success_rate_pct:.1f}% ok",
        flush=True,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    configure_logging(args.log_level)

    config = config_from_args(args)
    try:
        output_dir, results = asyncio.run(run_load_test(config, on_result=_announce))
    except ConfigurationError as exc:
        logger.error("invalid_configuration", error=str(exc))
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    print()
    print_results(results)
    if output_dir is not None:
        print(f"Run complete. Outputs written to: {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
