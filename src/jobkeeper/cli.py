"""Command-line interface for jobkeeper."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from jobkeeper import __version__ as JK_VERSION
from jobkeeper.core.errors import DeploymentFailedError, JobkeeperError, PartialMigrationError
from jobkeeper.core.models import ReconciliationState
from jobkeeper.core.settings import ReconcilerSettings
from jobkeeper.reconcile.resource import JobResource
from jobkeeper.safety.explain import ExplainLog
from jobkeeper.scheduler.client import SchedulerClient
from jobkeeper.scheduler.config import SchedulerConfig
from jobkeeper.state.config import ResourceConfig, load_resource_config
from jobkeeper.state.store import load_state, save_state

# failures that still changed the remote side; state is persisted and rc=1
_PARTIAL_FAILURES = (DeploymentFailedError, PartialMigrationError)


def _ensure_out_dir(out_dir: str) -> Path:
    path = Path(out_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_utc(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds")


def _report_ts() -> str:
    return _utc_now().strftime("%Y%m%d_%H%M%S")


def _write_json_report(path: Path, payload: dict) -> None:
    path.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def _write_report(out_dir: Path, report: dict, prefix: str) -> tuple[Path, Path]:
    ts_path = out_dir / f"{prefix}_{_report_ts()}.json"
    latest_path = out_dir / f"{prefix}_latest.json"
    _write_json_report(ts_path, report)
    _write_json_report(latest_path, report)
    return latest_path, ts_path


def _build_report(base: dict, *, command: str, started_at: datetime, finished_at: datetime, out_dir: Path) -> dict:
    report = {
        "schema_version": "jobkeeper_report.v0",
        "command": command,
        "jobkeeper_version": JK_VERSION,
        "started_at": _format_utc(started_at),
        "finished_at": _format_utc(finished_at),
        "duration_s": int((finished_at - started_at).total_seconds()),
        "out_dir": str(out_dir),
    }
    report.update(base)
    return report


def _build_client(args: argparse.Namespace) -> SchedulerClient:
    config = SchedulerConfig.from_env().with_overrides(
        address=getattr(args, "addr", None),
        token=getattr(args, "token", None),
        region=getattr(args, "region", None),
    )
    return SchedulerClient(config)


def _build_resource(args: argparse.Namespace, explain: ExplainLog) -> JobResource:
    client = _build_client(args)
    config = getattr(client, "config", None)
    return JobResource(
        client,
        settings=ReconcilerSettings.from_env(),
        explain=explain,
        default_namespace=getattr(config, "namespace", None),
    )


def _state_summary(state: ReconciliationState | None) -> dict | None:
    if state is None:
        return None
    return {
        "id": state.id,
        "namespace": state.namespace,
        "version": state.version,
        "status": state.status,
        "deployment_id": state.deployment_id,
        "deployment_status": state.deployment_status,
        "pending_submission": state.pending_submission,
    }


def _load_config(args: argparse.Namespace) -> ResourceConfig | None:
    path = getattr(args, "config", None)
    if not path:
        return None
    return load_resource_config(Path(path))


def _run(args: argparse.Namespace, command: str, body) -> int:
    out_dir = _ensure_out_dir(args.out)
    explain = ExplainLog(out_dir / "explain.jsonl")
    state_path = Path(args.state)
    started_at = _utc_now()
    explain.emit(f"{command}_start", {"state": str(state_path), "config": getattr(args, "config", None)})

    rc = 0
    try:
        base = body(args, explain, state_path)
        base.setdefault("ok", True)
    except JobkeeperError as exc:
        partial = isinstance(exc, _PARTIAL_FAILURES)
        if exc.state is not None:
            save_state(state_path, exc.state)
        explain.emit(
            f"{command}_error",
            {"error": str(exc), "error_type": type(exc).__name__, "state_saved": exc.state is not None},
        )
        print(f"ERROR: {exc}", file=sys.stderr)
        rc = 1 if partial else 2
        base = {
            "ok": False,
            "error": str(exc),
            "error_type": type(exc).__name__,
            "state": _state_summary(exc.state),
        }

    finished_at = _utc_now()
    report = _build_report(base, command=command, started_at=started_at, finished_at=finished_at, out_dir=out_dir)
    report["state_path"] = str(state_path)
    report["explain_path"] = str(explain.path)
    report["events"] = explain.names()
    latest_path, _ = _write_report(out_dir, report, command)
    explain.emit(f"{command}_done", {"ok": report["ok"], "rc": rc, "report": str(latest_path)})
    print(latest_path)
    return rc


def _apply(args: argparse.Namespace, explain: ExplainLog, state_path: Path) -> dict:
    config = _load_config(args)
    if config is None:
        raise JobkeeperError("apply requires --config")
    state = load_state(state_path)
    resource = _build_resource(args, explain)
    result = resource.apply(config, state)
    save_state(state_path, result.state)
    return {
        "action": result.action,
        "drift": result.drift.to_dict() if result.drift is not None else None,
        "state": _state_summary(result.state),
    }


def _refresh(args: argparse.Namespace, explain: ExplainLog, state_path: Path) -> dict:
    config = _load_config(args)
    state = load_state(state_path)
    if state is None:
        return {"drift": None, "state": None, "notes": ["no_state"]}
    resource = _build_resource(args, explain)
    result = resource.read(config, state)
    save_state(state_path, result.state)
    notes = []
    if result.state is None:
        notes.append("removed_from_state")
    return {
        "drift": result.drift.to_dict(),
        "resubmitted": result.resubmitted,
        "state": _state_summary(result.state),
        "notes": notes,
    }


def _plan(args: argparse.Namespace, explain: ExplainLog, state_path: Path) -> dict:
    config = _load_config(args)
    if config is None:
        raise JobkeeperError("plan requires --config")
    state = load_state(state_path)
    resource = _build_resource(args, explain)
    return {"plan": resource.plan(config, state).to_dict(), "state": _state_summary(state)}


def _destroy(args: argparse.Namespace, explain: ExplainLog, state_path: Path) -> dict:
    state = load_state(state_path)
    if state is None:
        return {"destroyed": False, "notes": ["no_state"]}
    resource = _build_resource(args, explain)
    resource.delete(state)
    save_state(state_path, None)
    return {"destroyed": True, "identity": state.identity.to_dict(), "deregistered": state.deregister_on_destroy}


def cmd_apply(args: argparse.Namespace) -> int:
    return _run(args, "apply", _apply)


def cmd_refresh(args: argparse.Namespace) -> int:
    return _run(args, "refresh", _refresh)


def cmd_plan(args: argparse.Namespace) -> int:
    return _run(args, "plan", _plan)


def cmd_destroy(args: argparse.Namespace) -> int:
    return _run(args, "destroy", _destroy)


def _add_common(parser: argparse.ArgumentParser, *, config_required: bool) -> None:
    parser.add_argument("--config", required=config_required, help="Resource config JSON")
    parser.add_argument("--state", required=True, help="State file (created if missing)")
    parser.add_argument("--out", default="report", help="Output directory")
    parser.add_argument("--addr", help="Scheduler address (overrides NOMAD_ADDR)")
    parser.add_argument("--token", help="ACL token (overrides NOMAD_TOKEN)")
    parser.add_argument("--region", help="Region (overrides NOMAD_REGION)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jk")
    parser.add_argument("--version", action="version", version=f"jobkeeper {JK_VERSION}")

    sub = parser.add_subparsers(dest="command", required=True)

    apply_cmd = sub.add_parser("apply", help="Create or update the job to match the config")
    _add_common(apply_cmd, config_required=True)
    apply_cmd.set_defaults(func=cmd_apply)

    refresh = sub.add_parser("refresh", help="Refresh state from the scheduler and report drift")
    _add_common(refresh, config_required=False)
    refresh.set_defaults(func=cmd_refresh)

    plan = sub.add_parser("plan", help="Preview what apply would do (read-only)")
    _add_common(plan, config_required=True)
    plan.set_defaults(func=cmd_plan)

    destroy = sub.add_parser("destroy", help="Tear down the job recorded in state")
    _add_common(destroy, config_required=False)
    destroy.set_defaults(func=cmd_destroy)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
