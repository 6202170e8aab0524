"""Turn a raw jobspec into the canonical job document sent to the scheduler."""

from __future__ import annotations

import json
import re

from jobkeeper.core.errors import JobspecParseError, SchedulerAPIError, SchedulerUnavailableError
from jobkeeper.core.models import JobFormat, JobSpecification, ParsedJob
from jobkeeper.scheduler.client import SchedulerClient

_FS_CALL_RE = re.compile(
    r"\b(?P<fn>file|fileexists|fileset|filebase64|filebase64sha256|filemd5|"
    r"filesha1|filesha256|filesha512|templatefile|abspath)\s*\("
)


def build_specification(
    source: str,
    *,
    json_format: bool = False,
    variables: dict[str, str] | None = None,
    allow_fs: bool = False,
) -> JobSpecification:
    return JobSpecification(
        source=source,
        format=JobFormat.JSON if json_format else JobFormat.STRUCTURED_TEXT,
        variables=dict(variables or {}),
        allow_fs=bool(allow_fs),
    )


def _require_job_id(job: dict) -> dict:
    job_id = job.get("ID")
    if not isinstance(job_id, str) or not job_id.strip():
        raise JobspecParseError("job ID is missing; is this a jobspec?")
    return job


def parse_json_jobspec(source: str) -> dict:
    """Accepts both the ``{"Job": {...}}`` envelope and a bare job object."""
    try:
        payload = json.loads(source)
    except json.JSONDecodeError as exc:
        raise JobspecParseError(str(exc)) from exc

    if not isinstance(payload, dict):
        raise JobspecParseError("expected a JSON object")
    if "Job" in payload:
        job = payload.get("Job")
        if not isinstance(job, dict):
            raise JobspecParseError("Job root must be an object")
        return _require_job_id(job)
    return _require_job_id(payload)


def check_filesystem_access(spec: JobSpecification) -> None:
    if spec.allow_fs:
        return
    match = _FS_CALL_RE.search(spec.source)
    if match:
        raise JobspecParseError(
            f"filesystem function disabled: {match.group('fn')}() requires allow_fs"
        )


def parse_jobspec(spec: JobSpecification, client: SchedulerClient | None = None) -> ParsedJob:
    if spec.format == JobFormat.JSON:
        return ParsedJob(job=parse_json_jobspec(spec.source), spec=spec)

    check_filesystem_access(spec)
    if client is None:
        raise JobspecParseError("structured-text jobspecs are parsed by the scheduler; no client configured")
    try:
        job = client.parse_job(spec.source, variables=spec.variables)
    except SchedulerUnavailableError:
        raise
    except SchedulerAPIError as exc:
        raise JobspecParseError(exc.message) from exc
    return ParsedJob(job=_require_job_id(job), spec=spec)
