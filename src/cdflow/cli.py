"""Command-line entry point for cdflow.

Run directly:
    python -m cdflow.cli run ci.json --downstream cd.json --revision 1.4.2
    python -m cdflow.cli status <run_id>
    python -m cdflow.cli list --pipeline ci --limit 20
    python -m cdflow.cli stats
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone

from cdflow.common.config import CDFlowSettings
from cdflow.common.constants import PipelineRole, RunState
from cdflow.common.errors import DeliveryError
from cdflow.common.schemas import LedgerEntry, RunContext
from cdflow.delivery.trigger import TriggerBridge, TriggerConfig
from cdflow.integrations.platform import ScriptedPlatform
from cdflow.integrations.registry import InMemoryArtifactRegistry
from cdflow.integrations.telemetry import LoggingSink
from cdflow.ledger.status import RunStatusView, StatusService
from cdflow.ledger.store import RunLedger
from cdflow.pipeline.coordinator import CoordinatorConfig, RunCoordinator
from cdflow.pipeline.loader import load_pipeline_file

logger = logging.getLogger(__name__)


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _parse_params(pairs: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"--param expects key=value, got '{pair}'")
        params[key] = value
    return params


def _print_view(view: RunStatusView) -> None:
    print(f"run {view.run_id}  {view.pipeline} v{view.pipeline_version}  [{view.state}]"
          + ("  (live)" if view.live else ""))
    if view.context.revision:
        print(f"  revision: {view.context.revision}")
    if view.context.artifact is not None:
        print(f"  artifact: {view.context.artifact}")
    if view.context.parent_run_id:
        print(f"  triggered by: {view.context.parent_run_id}")
    print(f"  started {_fmt_ts(view.started_at)}  completed {_fmt_ts(view.completed_at)}")
    for stage in view.stages:
        line = f"  - {stage.name:<16} {stage.kind:<9} {stage.state:<10} attempts={stage.attempts}"
        if stage.artifact is not None:
            line += f" artifact={stage.artifact}"
        print(line)
        if stage.state not in ("succeeded", "pending") and stage.output:
            for out_line in stage.output.strip().splitlines()[-5:]:
                print(f"      | {out_line}")


def _print_entry_row(entry: LedgerEntry) -> None:
    print(f"{_fmt_ts(entry.completed_at)}  {entry.run_id}  {entry.pipeline:<16} "
          f"{entry.outcome:<10} {entry.duration_seconds:8.1f}s")


# --- Commands ---


def _cmd_run(args: argparse.Namespace, settings: CDFlowSettings) -> int:
    context = RunContext(revision=args.revision, params=_parse_params(args.param))
    sink = LoggingSink()
    ledger = RunLedger(args.ledger or settings.ledger_path)
    coordinator = RunCoordinator(
        config=CoordinatorConfig.from_settings(settings),
        ledger=ledger,
        sink=sink,
    )
    registry = InMemoryArtifactRegistry()
    # The CLI has no real platform; deploy and verify stages roll out in simulation
    platform = ScriptedPlatform([False] * max(args.simulate_unready, 0) + [True])
    upstream = load_pipeline_file(args.pipeline, registry, platform, sink=sink)

    bridge: TriggerBridge | None = None
    if args.downstream:
        downstream = load_pipeline_file(args.downstream, registry, platform, sink=sink)
        if upstream.role != PipelineRole.UPSTREAM:
            upstream = replace(upstream, role=PipelineRole.UPSTREAM)
        bridge = TriggerBridge(
            coordinator, TriggerConfig(routes={upstream.name: downstream}),
        ).attach()

    try:
        entry = coordinator.run(upstream, context)
        _print_view(RunStatusView.from_entry(entry))
        ok = entry.outcome == RunState.SUCCEEDED
        if bridge is not None:
            for failure in bridge.failures:
                print(f"trigger failed: {failure.error}", file=sys.stderr)
                ok = False
            for triggered in bridge.triggered:
                downstream_entry = coordinator.wait(triggered.handle)
                _print_view(RunStatusView.from_entry(downstream_entry))
                ok = ok and downstream_entry.outcome == RunState.SUCCEEDED
    finally:
        coordinator.shutdown()
    return 0 if ok else 1


def _cmd_status(args: argparse.Namespace, settings: CDFlowSettings) -> int:
    service = StatusService(RunLedger(args.ledger or settings.ledger_path))
    view = service.get_run(args.run_id)
    if args.json:
        print(view.model_dump_json(indent=2))
    else:
        _print_view(view)
    return 0


def _cmd_list(args: argparse.Namespace, settings: CDFlowSettings) -> int:
    service = StatusService(RunLedger(args.ledger or settings.ledger_path))
    entries = service.list_runs(
        pipeline=args.pipeline, since=args.since, until=args.until, limit=args.limit,
    )
    for entry in entries:
        _print_entry_row(entry)
    if not entries:
        print("no runs recorded")
    return 0


def _cmd_stats(args: argparse.Namespace, settings: CDFlowSettings) -> int:
    ledger = RunLedger(args.ledger or settings.ledger_path)
    print(json.dumps(ledger.stats(args.pipeline), indent=2))
    return 0


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cdflow",
        description="cdflow – continuous-delivery orchestration engine",
    )
    parser.add_argument(
        "--ledger", type=str, default=None,
        help="Path to the JSON-lines run ledger (default: CDFLOW_LEDGER_PATH)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a pipeline file and wait for the outcome")
    run.add_argument("pipeline", help="Pipeline JSON file")
    run.add_argument("--downstream", default=None,
                     help="Pipeline JSON file to trigger when the run succeeds")
    run.add_argument("--revision", default="", help="Commit/version identifier")
    run.add_argument("--param", action="append", default=[], metavar="KEY=VALUE",
                     help="Extra context parameter (repeatable)")
    run.add_argument("--simulate-unready", type=int, default=0, metavar="N",
                     help="Deploy/verify stages run against a simulated platform that "
                          "reports N not-ready polls before the rollout is ready")
    run.set_defaults(handler=_cmd_run)

    status = sub.add_parser("status", help="Show a run with its stage breakdown")
    status.add_argument("run_id")
    status.add_argument("--json", action="store_true", help="Print JSON")
    status.set_defaults(handler=_cmd_status)

    listing = sub.add_parser("list", help="List recorded runs")
    listing.add_argument("--pipeline", default=None)
    listing.add_argument("--since", type=float, default=None, help="Epoch seconds")
    listing.add_argument("--until", type=float, default=None, help="Epoch seconds")
    listing.add_argument("--limit", type=int, default=None)
    listing.set_defaults(handler=_cmd_list)

    stats = sub.add_parser("stats", help="Outcome and duration statistics")
    stats.add_argument("--pipeline", default=None)
    stats.set_defaults(handler=_cmd_stats)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = CDFlowSettings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        return args.handler(args, settings)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except (DeliveryError, OSError, ValueError) as exc:
        logger.error("%s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
