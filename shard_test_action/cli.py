"""CLI entry point for sharded test runs."""

import argparse
import asyncio
import contextlib
import json
import logging
import shlex
import sys
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path
from typing import Any

from shard_test_action.agent import AgentClient, run_local_agents
from shard_test_action.changes import get_changed_files
from shard_test_action.config import RunConfig
from shard_test_action.coordinator import Coordinator, RunHandle
from shard_test_action.errors import SelectorUnavailable, ShardTestError
from shard_test_action.executor import CommandExecutor, TestExecutor
from shard_test_action.models.result import EXIT_CODES, RunResult, Verdict
from shard_test_action.selectors.loading import load_selector_manifest
from shard_test_action.service import HttpQueueClient, QueueClientConfig, serve_queue

STATUS_SYMBOLS = {
    "pass": "✅",
    "fail": "❌",
    "error": "❗",
}


def log_results_summary(
    log: logging.Logger, verdict: Verdict, results: Mapping[str, RunResult]
) -> None:
    """Log a formatted summary of test results and the run verdict."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for test_id in sorted(results):
        result = results[test_id]
        symbol = STATUS_SYMBOLS.get(result.status, "?")
        log.info(
            "%s %s: %s (%.2fs on %s)",
            symbol,
            test_id,
            result.status,
            result.actual_duration_ms / 1000,
            result.agent_id,
        )
        if result.message and result.status != "pass":
            log.info("  Message: %s", result.message)

    for test_id in verdict.missing_test_ids:
        log.info("? %s: no result", test_id)

    log.info("-" * 80)
    log.info(
        "Verdict: %s (passed=%d failed=%d errors=%d missing=%d elapsed=%.1fs)",
        verdict.status,
        verdict.passed,
        verdict.failed,
        verdict.errors,
        len(verdict.missing_test_ids),
        verdict.elapsed,
    )
    if verdict.permanently_failed_batches:
        log.info(
            "Permanently failed batches: %s",
            ", ".join(verdict.permanently_failed_batches),
        )


def format_output(verdict: Verdict, results: Mapping[str, RunResult]) -> dict[str, Any]:
    """Format the verdict and per-test results for JSON output."""
    return {
        "status": verdict.status,
        "tests_failed": verdict.tests_failed,
        "budget_exceeded": verdict.budget_exceeded,
        "incomplete": verdict.incomplete,
        "total": verdict.total,
        "passed": verdict.passed,
        "failed": verdict.failed,
        "errors": verdict.errors,
        "missing": list(verdict.missing_test_ids),
        "elapsed": round(verdict.elapsed, 3),
        "permanently_failed_batches": list(verdict.permanently_failed_batches),
        "results": [
            {
                "test_id": result.test_id,
                "agent_id": result.agent_id,
                "status": result.status,
                "duration_ms": result.actual_duration_ms,
                "message": result.message,
            }
            for _, result in sorted(results.items())
        ],
    }


def report_incomplete(log: logging.Logger, reason: str, error: Exception) -> int:
    """Log why the run could not produce a verdict and print it as JSON."""
    log.error("%s: %s", reason, error)
    print(json.dumps({"status": "incomplete", "error": f"{reason}: {error}"}))
    return EXIT_CODES["incomplete"]


@contextlib.asynccontextmanager
async def maybe_serve(
    handle: RunHandle, bind: str | None, token: str | None
) -> AsyncIterator[None]:
    """Expose the run's queue over HTTP when a bind address is given."""
    if bind is None:
        yield
        return
    host, _, port = bind.rpartition(":")
    async with serve_queue(handle.queue, host or "0.0.0.0", int(port), token):
        yield


async def drive_run(
    handle: RunHandle, executor: TestExecutor, local_agents: int
) -> Verdict:
    """Run local agents against a started run and wait for its verdict."""
    agent_ids = [f"local-{index + 1}" for index in range(local_agents)]
    agents = asyncio.create_task(
        run_local_agents(
            agent_ids, handle.queue, executor, handle.config.heartbeat_interval
        )
    )

    if not await handle.await_completion():
        await handle.settle()

    _, pending = await asyncio.wait({agents}, timeout=handle.config.poll_interval)
    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    return handle.verdict()


async def run(
    selector_key: str,
    selector_config_json: str,
    run_config_json: str,
    repo_path: Path,
    base_ref: str | None,
    test_command: Sequence[str],
    local_agents: int | None = None,
    test_timeout: float | None = None,
    bind: str | None = None,
    token: str | None = None,
) -> int:
    """Run the selected tests and return exit code.

    Without ``local_agents``, every planned agent runs in this process unless
    the queue is served to external agents.
    """
    log = logging.getLogger("shard_test_action")

    try:
        log.info("Loading selector: %s", selector_key)
        manifest = load_selector_manifest(selector_key)
        selector_context = manifest.open(json.loads(selector_config_json))
        config = RunConfig.model_validate_json(run_config_json)
        executor = CommandExecutor(
            command=test_command, cwd=repo_path, timeout=test_timeout
        )

        changed_files: Sequence[str] = []
        if base_ref:
            log.info("Detecting changed files (base_ref=%s)", base_ref)
            changed_files = await get_changed_files(repo_path, base_ref)
    except (ShardTestError, ValueError, TypeError) as e:
        return report_incomplete(log, "Cannot start run", e)

    if local_agents is None:
        local_agents = 0 if bind else config.agents

    async with selector_context as selector:
        coordinator = Coordinator(selector=selector, config=config)
        try:
            handle = await coordinator.start_run(changed_files)
        except SelectorUnavailable as e:
            return report_incomplete(log, "Selector unavailable, aborting run", e)

    async with handle, maybe_serve(handle, bind, token):
        verdict = await drive_run(handle, executor, local_agents)

    log_results_summary(log, verdict, handle.aggregator.results)
    print(json.dumps(format_output(verdict, handle.aggregator.results), indent=2))
    return verdict.exit_code


async def run_agent(
    queue_url: str,
    agent_id: str,
    test_command: Sequence[str],
    heartbeat_interval: float,
    cwd: Path | None = None,
    test_timeout: float | None = None,
    token: str | None = None,
) -> int:
    """Run one remote agent until the queue is empty and return exit code."""
    log = logging.getLogger("shard_test_action")
    try:
        config = QueueClientConfig(url=queue_url, token=token)
        executor = CommandExecutor(command=test_command, cwd=cwd, timeout=test_timeout)
    except ValueError as e:
        log.error("Cannot start agent %s: %s", agent_id, e)
        return EXIT_CODES["incomplete"]

    async with HttpQueueClient.from_config(config) as client:
        agent = AgentClient(
            agent_id=agent_id,
            queue=client,
            executor=executor,
            heartbeat_interval=heartbeat_interval,
        )
        await agent.run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        description="Distribute tests across parallel CI agents"
    )
    subparsers = parser.add_subparsers(dest="subcommand", required=True)

    run_parser = subparsers.add_parser("run", help="Coordinate a sharded test run")
    run_parser.add_argument(
        "--selector",
        required=True,
        help="Selector key (static, command)",
    )
    run_parser.add_argument(
        "--selector-config",
        required=True,
        help="JSON configuration for the selector",
    )
    run_parser.add_argument(
        "--run-config",
        default="{}",
        help="JSON overrides for agents, lease_ttl, max_attempts, budget, ...",
    )
    run_parser.add_argument(
        "--repo-path",
        type=Path,
        default=Path(),
        help="Path to the repository under test",
    )
    run_parser.add_argument(
        "--base-ref",
        default=None,
        help="Base git reference to compare against (no diff when omitted)",
    )
    run_parser.add_argument(
        "--local-agents",
        type=int,
        default=None,
        help="Agents to run in this process (defaults to the planned agent count)",
    )
    run_parser.add_argument(
        "--serve",
        default=None,
        metavar="HOST:PORT",
        help="Expose the work queue over HTTP for external agents",
    )

    agent_parser = subparsers.add_parser("agent", help="Run one remote agent")
    agent_parser.add_argument("--queue-url", required=True, help="Work queue URL")
    agent_parser.add_argument("--agent-id", required=True, help="Stable agent identity")
    agent_parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=30,
        help="Seconds between heartbeats and lease renewals",
    )
    agent_parser.add_argument(
        "--cwd",
        type=Path,
        default=None,
        help="Working directory for test commands",
    )

    for sub in (run_parser, agent_parser):
        sub.add_argument(
            "--command",
            required=True,
            help="Test command template, e.g. 'pytest {file_path}::{test_id}'",
        )
        sub.add_argument(
            "--test-timeout",
            type=float,
            default=None,
            help="Per-test timeout in seconds",
        )
        sub.add_argument(
            "--token",
            default=None,
            help="Bearer token shared by the queue server and its agents",
        )

    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if args.subcommand == "agent":
        exit_code = asyncio.run(
            run_agent(
                queue_url=args.queue_url,
                agent_id=args.agent_id,
                test_command=shlex.split(args.command),
                heartbeat_interval=args.heartbeat_interval,
                cwd=args.cwd,
                test_timeout=args.test_timeout,
                token=args.token,
            )
        )
        sys.exit(exit_code)

    if args.local_agents == 0 and args.serve is None:
        parser.error("--local-agents 0 requires --serve for external agents")

    exit_code = asyncio.run(
        run(
            selector_key=args.selector,
            selector_config_json=args.selector_config,
            run_config_json=args.run_config,
            repo_path=args.repo_path,
            base_ref=args.base_ref,
            test_command=shlex.split(args.command),
            local_agents=args.local_agents,
            test_timeout=args.test_timeout,
            bind=args.serve,
            token=args.token,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
