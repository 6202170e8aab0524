"""HTTP client for the scheduler's job API (Nomad-compatible endpoints)."""

from __future__ import annotations

import json
import re
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass

from jobkeeper.core.errors import (
    JobNotFoundError,
    PolicyRejectionError,
    SchedulerAPIError,
    SchedulerUnavailableError,
)
from jobkeeper.core.models import Deployment
from jobkeeper.scheduler.config import SchedulerConfig

_POLICY_REJECTION_RE = re.compile(r"soft[- ]mandatory|policy\s+override", re.IGNORECASE)
_VAR_LITERAL_RE = re.compile(r"^(-?\d+(\.\d+)?|true|false|null)$")
_MAX_ERROR_CHARS = 240


@dataclass
class RegisterResponse:
    eval_id: str | None
    job_modify_index: int | None
    warnings: str | None


def _snip(text: str) -> str:
    message = text.strip().replace("\n", " ")
    if len(message) > _MAX_ERROR_CHARS:
        message = f"{message[:_MAX_ERROR_CHARS]}..."
    return message


def _var_file_line(name: str, value: str) -> str:
    # same typing rules as -var flags: collections, numbers and bools pass through
    text = value.strip()
    if _VAR_LITERAL_RE.match(text) or text[:1] in ("[", "{"):
        return f"{name} = {text}"
    return f"{name} = {json.dumps(value)}"


def _classify_http_error(code: int, body: str, path: str) -> SchedulerAPIError:
    message = f"Unexpected response code: {code} ({_snip(body)})" if body.strip() else f"Unexpected response code: {code}"
    if code == 404:
        return JobNotFoundError(message, status_code=code, path=path)
    if _POLICY_REJECTION_RE.search(body):
        # surfaced unmodified so the caller sees the policy output
        return PolicyRejectionError(body.strip(), status_code=code, path=path)
    return SchedulerAPIError(message, status_code=code, path=path)


class SchedulerClient:
    def __init__(self, config: SchedulerConfig) -> None:
        self.config = config

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.config.address.startswith("https://"):
            return None
        if self.config.skip_verify:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            return context
        return ssl.create_default_context(cafile=self.config.ca_file)

    def _url(self, path: str, query: dict[str, object] | None) -> str:
        params: dict[str, str] = {}
        if self.config.region:
            params["region"] = self.config.region
        for key, value in (query or {}).items():
            if value is None:
                continue
            if isinstance(value, bool):
                params[key] = "true" if value else "false"
            else:
                params[key] = str(value)
        url = f"{self.config.address.rstrip('/')}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(sorted(params.items()))}"
        return url

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, object] | None = None,
        body: dict | None = None,
    ) -> object:
        headers = {"Accept": "application/json"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.config.token:
            headers["X-Nomad-Token"] = self.config.token

        request = urllib.request.Request(self._url(path, query), data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(
                request,
                context=self._ssl_context(),
                timeout=self.config.timeout_s,
            ) as response:
                payload = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            text = ""
            try:
                text = exc.read().decode("utf-8", errors="replace")
            except Exception:
                text = ""
            raise _classify_http_error(exc.code, text, path) from exc
        except urllib.error.URLError as exc:
            raise SchedulerUnavailableError(f"url error: {exc.reason}", path=path) from exc
        except OSError as exc:
            raise SchedulerUnavailableError(f"connection error: {exc}", path=path) from exc

        if not payload.strip():
            return None
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise SchedulerAPIError(f"invalid json from {path}: {exc}", path=path) from exc

    def _job_path(self, job_id: str, suffix: str = "") -> str:
        return f"/v1/job/{urllib.parse.quote(job_id, safe='')}{suffix}"

    def register_job(
        self,
        job: dict,
        *,
        namespace: str,
        policy_override: bool = False,
        submission: dict | None = None,
    ) -> RegisterResponse:
        body: dict[str, object] = {"Job": job}
        if policy_override:
            body["PolicyOverride"] = True
        if submission is not None:
            body["Submission"] = submission
        payload = self._request("POST", "/v1/jobs", query={"namespace": namespace}, body=body)
        if not isinstance(payload, dict):
            raise SchedulerAPIError("invalid register response shape", path="/v1/jobs")
        return RegisterResponse(
            eval_id=payload.get("EvalID") or None,
            job_modify_index=payload.get("JobModifyIndex"),
            warnings=payload.get("Warnings") or None,
        )

    def job_info(self, job_id: str, *, namespace: str) -> dict:
        payload = self._request("GET", self._job_path(job_id), query={"namespace": namespace})
        if not isinstance(payload, dict):
            raise SchedulerAPIError("invalid job response shape", path=self._job_path(job_id))
        return payload

    def deregister_job(
        self,
        job_id: str,
        *,
        namespace: str,
        purge: bool = False,
        global_: bool = False,
    ) -> str | None:
        query: dict[str, object] = {"namespace": namespace, "purge": purge}
        if global_:
            query["global"] = True
        payload = self._request("DELETE", self._job_path(job_id), query=query)
        if isinstance(payload, dict):
            return payload.get("EvalID") or None
        return None

    def latest_deployment(self, job_id: str, *, namespace: str) -> Deployment | None:
        payload = self._request("GET", self._job_path(job_id, "/deployment"), query={"namespace": namespace})
        if not isinstance(payload, dict):
            return None
        return Deployment.from_api(payload)

    def job_submission(self, job_id: str, version: int, *, namespace: str) -> dict | None:
        payload = self._request(
            "GET",
            self._job_path(job_id, "/submission"),
            query={"namespace": namespace, "version": version},
        )
        return payload if isinstance(payload, dict) else None

    def evaluation(self, eval_id: str) -> dict:
        path = f"/v1/evaluation/{urllib.parse.quote(eval_id, safe='')}"
        payload = self._request("GET", path)
        if not isinstance(payload, dict):
            raise SchedulerAPIError("invalid evaluation response shape", path=path)
        return payload

    def parse_job(self, source: str, *, variables: dict[str, str] | None = None) -> dict:
        body: dict[str, object] = {"JobHCL": source, "Canonicalize": True}
        if variables:
            body["Variables"] = "\n".join(_var_file_line(k, v) for k, v in sorted(variables.items()))
        payload = self._request("POST", "/v1/jobs/parse", body=body)
        if not isinstance(payload, dict):
            raise SchedulerAPIError("invalid parse response shape", path="/v1/jobs/parse")
        return payload

    def plan_job(self, job: dict, *, namespace: str, policy_override: bool = False) -> dict:
        job_id = str(job.get("ID") or "")
        body: dict[str, object] = {"Job": job, "Diff": True}
        if policy_override:
            body["PolicyOverride"] = True
        payload = self._request("POST", self._job_path(job_id, "/plan"), query={"namespace": namespace}, body=body)
        if not isinstance(payload, dict):
            raise SchedulerAPIError("invalid plan response shape", path=self._job_path(job_id, "/plan"))
        return payload
