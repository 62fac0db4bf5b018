from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

import boto3


class KanbanOpsError(Exception):
    pass


class UsageError(KanbanOpsError):
    pass


class OpError(KanbanOpsError):
    pass


KANBAN_ENDPOINT = "KANBAN_ENDPOINT"
KANBAN_STACK = "KANBAN_STACK"
DEFAULT_STACK = "KanbanStack"
ENDPOINT_OUTPUT_KEY = "KanbanInvokeUrl"


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    stack: str
    pretty: bool
    quiet: bool
    endpoint: str = ""


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _account_session() -> Any:
    profile = (os.environ.get("AWS_PROFILE") or "").strip() or None
    region = (os.environ.get("AWS_REGION") or "").strip() or None
    return boto3.session.Session(profile_name=profile, region_name=region)


def _cf_outputs(session: Any, *, stack: str) -> list[dict[str, Any]]:
    cf = session.client("cloudformation")
    try:
        resp = cf.describe_stacks(StackName=stack)
    except Exception as e:
        raise OpError(f"cloudformation describe-stacks failed for stack {stack!r}: {e}") from e
    stacks = resp.get("Stacks") or []
    if not stacks:
        raise OpError(f"stack not found: {stack}")
    outputs = stacks[0].get("Outputs") or []
    if not isinstance(outputs, list):
        return []
    return [o for o in outputs if isinstance(o, dict)]


def _stack_output_value(session: Any, *, stack: str, key: str) -> str | None:
    for o in _cf_outputs(session, stack=stack):
        if str(o.get("OutputKey", "")).strip() == key:
            v = str(o.get("OutputValue", "")).strip()
            return v if v else ""
    return None


def resolve_endpoint(g: GlobalOpts) -> str:
    """Explicit endpoint first, then env, then the stack output."""
    endpoint = g.endpoint.strip() or (_env_or_none(KANBAN_ENDPOINT) or "")
    if endpoint:
        return endpoint.rstrip("/")
    v = _stack_output_value(_account_session(), stack=g.stack, key=ENDPOINT_OUTPUT_KEY)
    if not v:
        raise UsageError(
            f"missing kanban endpoint (pass --endpoint, set {KANBAN_ENDPOINT}, "
            f"or deploy stack {g.stack!r} with output {ENDPOINT_OUTPUT_KEY})"
        )
    return v.rstrip("/")


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _load_json_object(*, raw: str, label: str) -> dict[str, Any]:
    try:
        val = json.loads(raw)
    except Exception as e:
        raise UsageError(f"invalid {label}: {e}") from e
    if not isinstance(val, dict):
        raise UsageError(f"invalid {label}: expected JSON object")
    return val


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def kanban_request(
    *,
    method: str,
    endpoint: str,
    path: str,
    body_obj: dict[str, Any] | None = None,
) -> dict[str, Any]:
    p = path if path.startswith("/") else f"/{path}"
    url = f"{endpoint.rstrip('/')}{p}"
    body_bytes = None
    headers: dict[str, str] = {"accept": "application/json"}
    if body_obj is not None:
        body_bytes = json.dumps(body_obj, separators=(",", ":")).encode("utf-8")
        headers["content-type"] = "application/json"

    status, _hdrs, data = _http_request(method=method, url=url, headers=headers, body=body_bytes)
    text = data.decode("utf-8", errors="replace")
    parsed: Any
    try:
        parsed = json.loads(text) if text else {}
    except Exception:
        parsed = {"raw": text}

    if status < 200 or status >= 300:
        if isinstance(parsed, dict):
            code = str(parsed.get("errorCode") or "").strip()
            msg = str(parsed.get("message") or parsed.get("error") or text).strip()
        else:
            code = ""
            msg = str(parsed)
        suffix = f" errorCode={code}" if code else ""
        raise OpError(f"kanban request failed: status={status} method={method} path={p}{suffix} message={msg}")

    if isinstance(parsed, dict):
        return parsed
    return {"result": parsed}
