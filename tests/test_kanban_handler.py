import base64
import importlib
import json

import pytest
from botocore.exceptions import ClientError

from conftest import FakeStore, task_fields
from kanban_coordinator import KanbanCoordinator
from kanban_errors import StoreUnavailableError


def _load_handler(monkeypatch, *, configured: bool = True, schema_version: str = "2026-10-01"):
    if configured:
        monkeypatch.setenv("KANBAN_SECTIONS_TABLE", "KanbanSections")
        monkeypatch.setenv("KANBAN_TASKS_TABLE", "KanbanTasks")
    else:
        monkeypatch.delenv("KANBAN_SECTIONS_TABLE", raising=False)
        monkeypatch.delenv("KANBAN_TASKS_TABLE", raising=False)
    monkeypatch.setenv("KANBAN_SCHEMA_VERSION", schema_version)
    import kanban_handler as mod
    import kanban_log

    importlib.reload(kanban_log)
    return importlib.reload(mod)


def _event(*, method: str, path: str, body: dict | None = None, raw_body: str | None = None, b64: bool = False):
    payload = raw_body if raw_body is not None else (json.dumps(body) if body is not None else None)
    if b64 and payload is not None:
        payload = base64.b64encode(payload.encode("utf-8")).decode("ascii")
    return {
        "httpMethod": method,
        "path": path,
        "body": payload,
        "isBase64Encoded": b64,
        "requestContext": {"requestId": "req-1"},
    }


@pytest.fixture
def wired(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = FakeStore()
    coord = KanbanCoordinator(store)
    monkeypatch.setattr(mod, "_coordinator", lambda: coord)
    return mod, store


def _call(mod, **kwargs):
    out = mod.handler(_event(**kwargs), None)
    return int(out["statusCode"]), json.loads(out["body"])


def test_create_section_and_list_round_trip(wired):
    mod, _store = wired

    status, body = _call(mod, method="POST", path="/api/sections", body={"title": "Todo"})
    assert status == 201
    assert body["requestId"] == "req-1"
    assert body["schemaVersion"] == "2026-10-01"
    section_id = body["section"]["id"]

    status, body = _call(mod, method="POST", path="/api/tasks", body=task_fields(section_id))
    assert status == 201
    task_id = body["task"]["id"]

    status, body = _call(mod, method="GET", path="/api/sections")
    assert status == 200
    assert body["items"][0]["section"]["taskIds"] == [task_id]
    assert body["items"][0]["tasks"][0]["title"] == "Write spec"


def test_stage_prefix_is_ignored(wired):
    mod, _store = wired
    status, body = _call(mod, method="GET", path="/prod/api/sections")
    assert status == 200
    assert body["items"] == []


def test_create_section_validation_error_maps_to_400(wired):
    mod, _store = wired
    status, body = _call(mod, method="POST", path="/api/sections", body={"title": " "})
    assert status == 400
    assert body["errorCode"] == "VALIDATION_ERROR"


def test_create_task_with_unknown_section_maps_to_404(wired):
    mod, store = wired
    status, body = _call(mod, method="POST", path="/api/tasks", body=task_fields("missing"))
    assert status == 404
    assert body["errorCode"] == "SECTION_NOT_FOUND"
    assert store.tasks == {}


def test_invalid_json_body_is_rejected(wired):
    mod, _store = wired
    status, body = _call(mod, method="POST", path="/api/sections", raw_body="{not json")
    assert status == 400
    assert body["errorCode"] == "INVALID_BODY"


def test_base64_body_is_decoded(wired):
    mod, _store = wired
    status, body = _call(mod, method="POST", path="/api/sections", body={"title": "Todo"}, b64=True)
    assert status == 201
    assert body["section"]["title"] == "Todo"


def test_update_move_and_delete_routes(wired):
    mod, store = wired
    s1 = store.create_section("Todo")
    s2 = store.create_section("Done")
    task = store.create_task(task_fields(s1["id"]))
    store.add_task_to_section(s1["id"], task["id"])

    status, body = _call(mod, method="PATCH", path=f"/api/tasks/{task['id']}", body={"title": "Renamed"})
    assert status == 200
    assert body["task"]["title"] == "Renamed"

    status, body = _call(
        mod,
        method="PATCH",
        path=f"/api/tasks/{task['id']}/move",
        body={"fromSectionId": s1["id"], "toSectionId": s2["id"]},
    )
    assert status == 200
    assert body["task"]["sectionId"] == s2["id"]
    assert store.sections[s2["id"]]["taskIds"] == [task["id"]]

    status, body = _call(mod, method="DELETE", path=f"/api/tasks/{task['id']}")
    assert status == 200
    assert body["deleted"] is True
    assert store.sections[s2["id"]]["taskIds"] == []


def test_move_requires_target_section(wired):
    mod, _store = wired
    status, body = _call(mod, method="PATCH", path="/api/tasks/t-1/move", body={"fromSectionId": "s-1"})
    assert status == 400
    assert body["errorCode"] == "VALIDATION_ERROR"


def test_delete_unknown_task_maps_to_404(wired):
    mod, _store = wired
    status, body = _call(mod, method="DELETE", path="/api/tasks/unknown")
    assert status == 404
    assert body["errorCode"] == "TASK_NOT_FOUND"


def test_consistency_routes(wired):
    mod, store = wired
    s1 = store.create_section("Todo")
    store.create_task(task_fields(s1["id"]))

    status, body = _call(mod, method="GET", path="/api/consistency")
    assert status == 200
    assert body["consistent"] is False
    assert len(body["unlisted"]) == 1

    status, body = _call(mod, method="POST", path="/api/consistency/repair")
    assert status == 200
    assert body["repaired"]["relisted"] == 1

    status, body = _call(mod, method="GET", path="/api/consistency")
    assert body["consistent"] is True


def test_unknown_route_returns_404(wired):
    mod, _store = wired
    status, body = _call(mod, method="GET", path="/api/boards")
    assert status == 404
    assert body["errorCode"] == "NOT_FOUND"


def test_store_client_error_maps_to_ddb_error(wired, capsys):
    mod, store = wired
    store.fail_next["list_sections_with_tasks"] = ClientError(
        {"Error": {"Code": "ResourceNotFoundException", "Message": "no table"}},
        "Scan",
    )

    status, body = _call(mod, method="GET", path="/api/sections")

    assert status == 500
    assert body["errorCode"] == "DDB_ERROR"
    wide = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert wide["event"] == "kanban_api_request"
    assert wide["outcome"] == "error"
    assert wide["error"]["type"] == "ClientError"


def test_wide_event_logged_per_request(wired, capsys):
    mod, _store = wired
    _call(mod, method="POST", path="/api/sections", body={"title": "Todo"})

    wide = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert wide["route"] == "create_section"
    assert wide["status_code"] == 201
    assert wide["outcome"] == "success"
    assert wide["request_id"] == "req-1"
    assert "duration_ms" in wide


def test_missing_table_env_is_misconfigured(monkeypatch):
    mod = _load_handler(monkeypatch, configured=False)
    out = mod.handler(_event(method="GET", path="/api/sections"), None)
    body = json.loads(out["body"])
    assert int(out["statusCode"]) == 500
    assert body["errorCode"] == "MISCONFIGURED"


def test_throttled_batch_read_maps_to_503(wired):
    mod, store = wired
    store.fail_next["list_sections_with_tasks"] = StoreUnavailableError("batch read still throttled after 5 attempts")

    status, body = _call(mod, method="GET", path="/api/sections")

    assert status == 503
    assert body["errorCode"] == "DDB_THROTTLED"


def test_schema_version_comes_from_log_module(monkeypatch, capsys):
    mod = _load_handler(monkeypatch, schema_version="2027-01-01")
    import kanban_log

    coord = KanbanCoordinator(FakeStore())
    monkeypatch.setattr(mod, "_coordinator", lambda: coord)

    status, body = _call(mod, method="GET", path="/api/sections")

    assert status == 200
    assert mod.SCHEMA_VERSION is kanban_log.SCHEMA_VERSION
    assert body["schemaVersion"] == "2027-01-01"
    wide = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert wide["schema_version"] == "2027-01-01"
