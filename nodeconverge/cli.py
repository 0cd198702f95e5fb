"""Command line interface.

Usage:
    # Bring the nodes listed in a topology file to the declared counts
    nodeconverge converge topology.yaml

    # Run specific phases on the existing nodes
    nodeconverge lift topology.yaml --phase configure --phase smoke-test

    # Log the commands instead of running them over ssh
    nodeconverge converge topology.yaml --dry-run -v

    # Use Lambda Labs instead of the topology's node list
    LAMBDA_API_KEY=... nodeconverge converge topology.yaml --provider lambda
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Coroutine
from typing import Any

from nodeconverge.config.converge_config import AdminUser, ConvergeConfig
from nodeconverge.config.topology import Topology, load_topology
from nodeconverge.coordination.executor import (
    DryRunPhaseExecutor,
    PhaseExecutor,
    SshPhaseExecutor,
)
from nodeconverge.coordination.operation import run_operation
from nodeconverge.coordination.orchestrator import ConvergeOrchestrator, ConvergeResult
from nodeconverge.providers.base import NodeProvider
from nodeconverge.providers.lambda_provider import LambdaNodeProvider
from nodeconverge.providers.node_list import NodeListProvider
from nodeconverge.utils.exceptions import NodeConvergeError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nodeconverge",
        description="Converge compute nodes to a declared topology",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("converge", "Adjust node counts, then bootstrap and configure nodes"),
        ("lift", "Run phases on existing nodes without changing counts"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("topology", help="Topology YAML file")
        sub.add_argument(
            "--phase",
            action="append",
            dest="phases",
            default=None,
            help="Phase to run (repeatable; default: the groups' default phases)",
        )
        sub.add_argument(
            "--provider",
            choices=("nodes", "lambda"),
            default="nodes",
            help="Node source: the topology's node list or Lambda Labs (default: nodes)",
        )
        sub.add_argument(
            "--dry-run",
            action="store_true",
            help="Log commands instead of running them",
        )
        sub.add_argument(
            "--timeout",
            type=float,
            default=None,
            help="Report a timeout after this many seconds (the run is not cancelled)",
        )
        sub.add_argument(
            "-v", "--verbose",
            action="store_true",
            help="Verbose output",
        )
    return parser


def build_provider(name: str, topology: Topology) -> NodeProvider:
    if name == "lambda":
        return LambdaNodeProvider()
    return NodeListProvider(topology.nodes)


def build_executor(dry_run: bool, admin_user: AdminUser) -> PhaseExecutor:
    if dry_run:
        return DryRunPhaseExecutor()
    return SshPhaseExecutor(admin_user)


def print_summary(command: str, result: ConvergeResult) -> None:
    print("\n" + "=" * 50)
    print(f"{command.upper()} REPORT")
    print("=" * 50)
    print(f"Targets:            {len(result.targets)}")
    print(f"Created:            {len(result.new_targets)}")
    print(f"Removed:            {sum(len(r.node_ids) for r in result.removed)}")
    print(f"Phase results:      {len(result.results)}")
    print("=" * 50)
    for target_id, phase, error in result.errors:
        print(f"  {target_id} [{phase}]: {error}")


async def _run_and_close(
    provider: NodeProvider, coro: Coroutine[Any, Any, ConvergeResult]
) -> ConvergeResult:
    try:
        return await coro
    finally:
        await provider.close()


def run(args: argparse.Namespace) -> int:
    try:
        topology = load_topology(args.topology)
    except NodeConvergeError as e:
        logger.error(str(e))
        return 1

    config = ConvergeConfig.from_env()
    admin_user = AdminUser.from_env()
    provider = build_provider(args.provider, topology)
    orchestrator = ConvergeOrchestrator(
        provider,
        build_executor(args.dry_run or config.dry_run, admin_user),
        config=config,
        admin_user=admin_user,
    )
    run_fn = orchestrator.converge if args.command == "converge" else orchestrator.lift
    operation = run_operation(
        _run_and_close(provider, run_fn(topology.groups, args.phases)), async_=True
    )

    # A timeout is reported but the run is not cancelled.
    timed_out = not operation.join(args.timeout)
    if timed_out:
        logger.error(
            f"{args.command} did not finish within {args.timeout}s, "
            f"waiting for in-flight phases to complete"
        )

    result, error = operation.outcome()
    if error is not None:
        if not isinstance(error, NodeConvergeError):
            raise error
        logger.error(f"{args.command} failed: {error}")
        return 1

    print_summary(args.command, result)
    if not result.ok:
        logger.error(f"{args.command} failed: {result.error}")
        return 1
    return 1 if timed_out else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
