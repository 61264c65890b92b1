from datetime import datetime, timedelta
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from todo_ledger.context import build_context
from todo_ledger.errors import LedgerUnavailableError
from todo_ledger.main import create_app

from conftest import make_settings


@pytest.fixture
def app_context():
    return build_context(make_settings())


@pytest.fixture
def client(app_context):
    with TestClient(create_app(context=app_context)) as c:
        yield c


def settle(app_context):
    """Wait for the background ledger writes triggered by previous requests."""
    assert app_context.orchestrator.wait_idle(timeout=5)


def create_todo_payload(
    title="Test Task",
    description="Do something",
    completed=False,
    due_date=None,
    priority=None,
):
    payload = {
        "title": title,
        "description": description,
        "completed": completed,
    }
    if due_date is not None:
        payload["due_date"] = due_date
    if priority is not None:
        payload["priority"] = priority
    return payload


def assert_todo_shape(todo: dict):
    # Basic structure validation
    for key in ["id", "owner_id", "title", "completed", "priority", "created_at", "updated_at", "sync_status"]:
        assert key in todo
    # Optional fields
    assert "description" in todo
    assert "due_date" in todo
    assert "ledger_hash" in todo
    # Type-ish checks
    assert isinstance(todo["id"], str)
    assert isinstance(todo["title"], str)
    assert isinstance(todo["completed"], bool)
    assert todo["sync_status"] in ("pending", "synced", "failed")
    # Internal bookkeeping stays out of the response
    assert "revision" not in todo
    assert "is_deleted" not in todo
    # FastAPI/Pydantic returns strings for datetime fields
    datetime.fromisoformat(todo["created_at"])
    datetime.fromisoformat(todo["updated_at"])
    if todo["due_date"] is not None:
        datetime.fromisoformat(todo["due_date"])


def assert_not_found(res):
    assert res.status_code == 404
    body = res.json()
    assert body["error"] == "NOT_FOUND"
    assert body["message"] == "Todo not found"


class TestHealth:
    def test_health_check(self, client):
        res = client.get("/")
        assert res.status_code == 200
        data = res.json()
        assert data["message"] == "Healthy"
        assert data["backend"] in ("memory", "sqlite")
        assert data["ledger"] == "memory"
        assert data["signer"].startswith("0x")


class TestTodosCRUD:
    def test_create_todo_minimal(self, client):
        payload = create_todo_payload(title="Buy milk", description=None, completed=False)
        res = client.post("/api/v1/todos/", json=payload)
        assert res.status_code == 201
        todo = res.json()
        assert_todo_shape(todo)
        assert todo["title"] == "Buy milk"
        assert todo["description"] is None
        assert todo["completed"] is False
        assert todo["priority"] == "medium"
        assert todo["owner_id"] == "local"

    def test_create_returns_before_ledger_sync(self, client, app_context):
        res = client.post("/api/v1/todos/", json=create_todo_payload(title="Async"))
        assert res.json()["sync_status"] == "pending"
        assert res.json()["ledger_hash"] is None

        settle(app_context)
        synced = client.get(f"/api/v1/todos/{res.json()['id']}").json()
        assert synced["sync_status"] == "synced"
        assert synced["ledger_hash"].startswith("0x")
        assert synced["ledger_tx_ref"].startswith("0x")

    def test_create_todo_with_due_date_date_string(self, client):
        payload = create_todo_payload(title="Pay bills", description="Electricity", due_date="2099-12-25")
        res = client.post("/api/v1/todos/", json=payload)
        assert res.status_code == 201
        todo = res.json()
        assert_todo_shape(todo)
        # Due date should be promoted to midnight
        assert todo["due_date"].startswith("2099-12-25")

    def test_get_todo_and_not_found(self, client):
        res_create = client.post("/api/v1/todos/", json=create_todo_payload(title="Read book"))
        assert res_create.status_code == 201
        tid = res_create.json()["id"]

        res_get = client.get(f"/api/v1/todos/{tid}")
        assert res_get.status_code == 200
        fetched = res_get.json()
        assert fetched["id"] == tid
        assert fetched["title"] == "Read book"

        assert_not_found(client.get("/api/v1/todos/999999"))

    def test_put_replace_todo(self, client):
        res_create = client.post(
            "/api/v1/todos/",
            json=create_todo_payload(title="Initial", description="A", completed=False, priority="high"),
        )
        assert res_create.status_code == 201
        tid = res_create.json()["id"]

        # Replace with PUT (uses TodoCreate schema)
        new_payload = create_todo_payload(title="Replaced", description=None, completed=True, due_date="2100-01-01")
        res_put = client.put(f"/api/v1/todos/{tid}", json=new_payload)
        assert res_put.status_code == 200
        updated = res_put.json()
        assert updated["id"] == tid
        assert updated["title"] == "Replaced"
        assert updated["description"] is None
        assert updated["completed"] is True
        assert updated["completed_at"] is not None
        assert updated["priority"] == "medium"
        assert updated["due_date"].startswith("2100-01-01")

        assert_not_found(client.put("/api/v1/todos/424242", json=new_payload))

    def test_patch_partial_update(self, client):
        res_create = client.post("/api/v1/todos/", json=create_todo_payload(title="Partial", description="X"))
        assert res_create.status_code == 201
        tid = res_create.json()["id"]

        # Partial update: set completed true and change title
        patch_payload = {"title": "Partial Updated", "completed": True}
        res_patch = client.patch(f"/api/v1/todos/{tid}", json=patch_payload)
        assert res_patch.status_code == 200
        patched = res_patch.json()
        assert patched["id"] == tid
        assert patched["title"] == "Partial Updated"
        assert patched["completed"] is True
        assert patched["sync_status"] == "pending"
        # description should remain unchanged
        assert patched["description"] == "X"

        assert_not_found(client.patch("/api/v1/todos/123456", json={"title": "Nope"}))

    def test_toggle(self, client):
        tid = client.post("/api/v1/todos/", json=create_todo_payload(title="Flip")).json()["id"]
        res = client.patch(f"/api/v1/todos/{tid}/toggle")
        assert res.status_code == 200
        assert res.json()["completed"] is True
        assert client.patch(f"/api/v1/todos/{tid}/toggle").json()["completed"] is False
        assert_not_found(client.patch("/api/v1/todos/nope/toggle"))

    def test_delete_todo(self, client):
        res_create = client.post("/api/v1/todos/", json=create_todo_payload(title="ToDelete"))
        tid = res_create.json()["id"]

        res_del = client.delete(f"/api/v1/todos/{tid}")
        assert res_del.status_code == 204
        assert res_del.text == ""

        # Subsequent get is 404
        assert_not_found(client.get(f"/api/v1/todos/{tid}"))
        # Deleting again should still be 404
        assert_not_found(client.delete(f"/api/v1/todos/{tid}"))

    def test_restore(self, client, app_context):
        tid = client.post("/api/v1/todos/", json=create_todo_payload(title="Phoenix")).json()["id"]
        client.delete(f"/api/v1/todos/{tid}")
        settle(app_context)
        assert app_context.ledger.get(tid).deleted is True

        res = client.post(f"/api/v1/todos/{tid}/restore")
        assert res.status_code == 200
        assert res.json()["title"] == "Phoenix"
        settle(app_context)
        assert app_context.ledger.get(tid).deleted is False
        assert client.get(f"/api/v1/todos/{tid}").status_code == 200

        # Restoring a live todo is a 404
        assert_not_found(client.post(f"/api/v1/todos/{tid}/restore"))


class TestOwnership:
    def test_todos_are_scoped_to_owner(self, client):
        res = client.post("/api/v1/todos/", json=create_todo_payload(title="Mine"), headers={"X-Owner-Id": "alice"})
        assert res.json()["owner_id"] == "alice"
        tid = res.json()["id"]

        bob = {"X-Owner-Id": "bob"}
        assert_not_found(client.get(f"/api/v1/todos/{tid}", headers=bob))
        assert_not_found(client.patch(f"/api/v1/todos/{tid}", json={"title": "Stolen"}, headers=bob))
        assert_not_found(client.delete(f"/api/v1/todos/{tid}", headers=bob))
        assert_not_found(client.get(f"/api/v1/todos/{tid}/verify", headers=bob))
        assert client.get("/api/v1/todos/", headers=bob).json()["total"] == 0
        assert client.get(f"/api/v1/todos/{tid}", headers={"X-Owner-Id": "alice"}).json()["title"] == "Mine"


class TestBasicAuth:
    @pytest.fixture
    def auth_client(self):
        settings = make_settings(enable_basic_auth=True, basic_auth_username="admin", basic_auth_password="s3cret")
        with TestClient(create_app(context=build_context(settings))) as c:
            yield c

    def test_missing_credentials(self, auth_client):
        res = auth_client.get("/api/v1/todos/")
        assert res.status_code == 401
        assert res.headers["www-authenticate"] == "Basic"

    def test_wrong_credentials(self, auth_client):
        assert auth_client.get("/api/v1/todos/", auth=("admin", "nope")).status_code == 401

    def test_username_is_owner(self, auth_client):
        res = auth_client.post("/api/v1/todos/", json=create_todo_payload(title="Authed"), auth=("admin", "s3cret"))
        assert res.status_code == 201
        assert res.json()["owner_id"] == "admin"

    def test_sync_routes_require_auth(self, auth_client):
        assert auth_client.get("/api/v1/sync/status").status_code == 401


class TestVerification:
    def test_verify_synced_todo(self, client, app_context):
        tid = client.post("/api/v1/todos/", json=create_todo_payload(title="Proof")).json()["id"]
        settle(app_context)

        res = client.get(f"/api/v1/todos/{tid}/verify")
        assert res.status_code == 200
        body = res.json()
        assert body["is_valid"] is True
        assert body["primary_hash"] == body["ledger_hash"]
        assert body["ledger_meta"]["owner"] == app_context.ledger.signer_address
        assert body["ledger_meta"]["deleted"] is False
        datetime.fromisoformat(body["ledger_meta"]["timestamp"])

    def test_verify_before_sync(self, client, app_context):
        # Holding the ledger down keeps the todo out of the synced state.
        with mock.patch.object(app_context.ledger, "create", side_effect=LedgerUnavailableError("rpc down")):
            tid = client.post("/api/v1/todos/", json=create_todo_payload(title="Unsynced")).json()["id"]
            settle(app_context)

        res = client.get(f"/api/v1/todos/{tid}/verify")
        assert res.status_code == 400
        body = res.json()
        assert body["error"] == "NOT_SYNCED"
        assert body["detail"]["sync_status"] == "failed"
        assert body["detail"]["last_sync_error"] == "rpc down"

    def test_tampered_ledger_is_reported(self, client, app_context):
        tid = client.post("/api/v1/todos/", json=create_todo_payload(title="Tamper")).json()["id"]
        settle(app_context)
        app_context.ledger.update(tid, "0x" + "ee" * 32)

        body = client.get(f"/api/v1/todos/{tid}/verify").json()
        assert body["is_valid"] is False
        assert body["ledger_hash"] == "0x" + "ee" * 32

    def test_ledger_outage_maps_to_503(self, client, app_context):
        tid = client.post("/api/v1/todos/", json=create_todo_payload(title="Outage")).json()["id"]
        settle(app_context)
        with mock.patch.object(app_context.ledger, "get", side_effect=LedgerUnavailableError("rpc down")):
            res = client.get(f"/api/v1/todos/{tid}/verify")
        assert res.status_code == 503
        assert res.json()["error"] == "LEDGER_UNAVAILABLE"

    def test_sync_history(self, client, app_context):
        tid = client.post("/api/v1/todos/", json=create_todo_payload(title="History")).json()["id"]
        settle(app_context)
        client.patch(f"/api/v1/todos/{tid}", json={"title": "History v2"})
        settle(app_context)

        res = client.get(f"/api/v1/todos/{tid}/sync-history")
        assert res.status_code == 200
        entries = res.json()
        assert [e["operation"] for e in entries] == ["update", "create"]
        assert all(e["status"] == "confirmed" for e in entries)
        assert_not_found(client.get(f"/api/v1/todos/{tid}/sync-history", headers={"X-Owner-Id": "bob"}))


class TestSyncEndpoints:
    def test_status(self, client, app_context):
        res = client.get("/api/v1/sync/status")
        assert res.status_code == 200
        body = res.json()
        assert body["sweeper_running"] is False
        assert body["max_retries"] == app_context.settings.sync_max_retries
        assert body["exhausted"] == []

    def test_status_lists_only_callers_exhausted_todos(self):
        context = build_context(make_settings(sync_max_retries=1))
        with TestClient(create_app(context=context)) as client:
            with mock.patch.object(context.ledger, "create", side_effect=LedgerUnavailableError("rpc down")):
                res = client.post(
                    "/api/v1/todos/",
                    json=create_todo_payload(title="alice secret", description="payroll"),
                    headers={"X-Owner-Id": "alice"},
                )
                tid = res.json()["id"]
                settle(context)

            mine = client.get("/api/v1/sync/status", headers={"X-Owner-Id": "alice"}).json()
            assert [t["id"] for t in mine["exhausted"]] == [tid]

            theirs = client.get("/api/v1/sync/status", headers={"X-Owner-Id": "mallory"}).json()
            assert theirs["exhausted"] == []

    def test_manual_sweep_leaves_other_owners_alone(self, client, app_context):
        app_context.sweeper.backoff_schedule = (0,)
        with mock.patch.object(app_context.ledger, "create", side_effect=LedgerUnavailableError("rpc down")):
            tid = client.post(
                "/api/v1/todos/", json=create_todo_payload(title="Bob's"), headers={"X-Owner-Id": "bob"}
            ).json()["id"]
            settle(app_context)

        res = client.post("/api/v1/sync/sweep", headers={"X-Owner-Id": "mallory"})
        assert res.status_code == 200
        assert res.json()["retried"] == 0
        assert client.get(f"/api/v1/todos/{tid}", headers={"X-Owner-Id": "bob"}).json()["sync_status"] == "failed"

    def test_manual_sweep_retries_failed_sync(self, client, app_context):
        app_context.sweeper.backoff_schedule = (0,)
        with mock.patch.object(app_context.ledger, "create", side_effect=LedgerUnavailableError("rpc down")):
            tid = client.post("/api/v1/todos/", json=create_todo_payload(title="Retry me")).json()["id"]
            settle(app_context)
        assert client.get(f"/api/v1/todos/{tid}").json()["sync_status"] == "failed"

        res = client.post("/api/v1/sync/sweep")
        assert res.status_code == 200
        assert res.json()["synced"] == 1
        assert client.get(f"/api/v1/todos/{tid}").json()["sync_status"] == "synced"


class TestListPaginationFilteringSorting:
    def seed_todos(self, client, count=10):
        base = datetime.now()
        created_ids = []
        for i in range(count):
            due = (base + timedelta(days=i)).date().isoformat()
            payload = create_todo_payload(
                title=f"Task {i}",
                description=f"Desc {i}",
                completed=(i % 2 == 0),
                due_date=due,
                priority="high" if i % 3 == 0 else "low",
            )
            res = client.post("/api/v1/todos/", json=payload)
            assert res.status_code == 201
            created_ids.append(res.json()["id"])
        return created_ids

    def test_list_basic_pagination(self, client):
        self.seed_todos(client, 7)
        res1 = client.get("/api/v1/todos/?limit=3&offset=0")
        assert res1.status_code == 200
        page1 = res1.json()
        assert page1["limit"] == 3
        assert page1["offset"] == 0
        assert page1["total"] == 7
        assert len(page1["items"]) == 3

        res2 = client.get("/api/v1/todos/?limit=3&offset=6")
        page2 = res2.json()
        assert page2["offset"] == 6
        assert len(page2["items"]) == 1

    def test_list_filter_completed_true_false(self, client):
        self.seed_todos(client, 6)  # creates 0..5, completed for even indices
        data_true = client.get("/api/v1/todos/?completed=true&limit=100").json()
        assert data_true["total"] == 3
        assert all(item["completed"] is True for item in data_true["items"])
        data_false = client.get("/api/v1/todos/?completed=false&limit=100").json()
        assert all(item["completed"] is False for item in data_false["items"])

    def test_list_filter_priority_and_sync_status(self, client, app_context):
        self.seed_todos(client, 6)
        high = client.get("/api/v1/todos/?priority=high&limit=100").json()
        assert {item["title"] for item in high["items"]} == {"Task 0", "Task 3"}

        settle(app_context)
        assert client.get("/api/v1/todos/?sync_status=synced").json()["total"] == 6
        assert client.get("/api/v1/todos/?sync_status=pending").json()["total"] == 0

    def test_list_search_q_matches_title_and_description(self, client):
        self.seed_todos(client, 5)
        data_title = client.get("/api/v1/todos/?q=Task 1&limit=100").json()
        assert any("Task 1" in item["title"] for item in data_title["items"])

        data_desc = client.get("/api/v1/todos/?q=Desc 2&limit=100").json()
        assert any("Desc 2" in (item["description"] or "") for item in data_desc["items"])

    def test_list_sort_and_order(self, client):
        self.seed_todos(client, 5)
        default_items = client.get("/api/v1/todos/?limit=5").json()["items"]
        created_ts = [datetime.fromisoformat(t["created_at"]) for t in default_items]
        assert created_ts == sorted(created_ts, reverse=True)

        items_asc = client.get("/api/v1/todos/?sort=created_at&limit=5").json()["items"]
        created_ts_asc = [datetime.fromisoformat(t["created_at"]) for t in items_asc]
        assert created_ts_asc == sorted(created_ts_asc)

        items_order_desc = client.get("/api/v1/todos/?sort=created_at&order=desc&limit=5").json()["items"]
        created_ts_desc = [datetime.fromisoformat(t["created_at"]) for t in items_order_desc]
        assert created_ts_desc == sorted(created_ts_desc, reverse=True)

    def test_list_invalid_order_param(self, client):
        res = client.get("/api/v1/todos/?order=invalid")
        assert res.status_code == 400
        assert res.json()["detail"] == "order must be 'asc' or 'desc'"

    def test_stats(self, client):
        client.post("/api/v1/todos/", json=create_todo_payload(title="Late", due_date="2000-01-01"))
        client.post("/api/v1/todos/", json=create_todo_payload(title="Done", completed=True))
        client.post("/api/v1/todos/", json=create_todo_payload(title="Open"))
        res = client.get("/api/v1/todos/stats")
        assert res.status_code == 200
        assert res.json() == {"total": 3, "completed": 1, "pending": 2, "overdue": 1}


class TestValidationErrors:
    def test_create_validation_error_title_empty(self, client):
        # Empty title should trigger 422 with our error format handler
        payload = {"title": "  ", "description": "x"}
        res = client.post("/api/v1/todos/", json=payload)
        assert res.status_code == 422
        body = res.json()
        assert body.get("error") == "ValidationError"
        assert body.get("message") == "Request validation failed"
        assert isinstance(body.get("detail"), list)

    def test_create_validation_error_bad_priority(self, client):
        res = client.post("/api/v1/todos/", json=create_todo_payload(priority="someday"))
        assert res.status_code == 422
        assert res.json()["error"] == "ValidationError"

    def test_patch_validation_error_bad_due_date(self, client):
        res_create = client.post("/api/v1/todos/", json=create_todo_payload(title="Due date bad"))
        assert res_create.status_code == 201
        tid = res_create.json()["id"]

        res_patch = client.patch(f"/api/v1/todos/{tid}", json={"due_date": "not-a-date"})
        assert res_patch.status_code == 422
        body = res_patch.json()
        assert body.get("error") == "ValidationError"
        assert body.get("message") == "Request validation failed"
        assert isinstance(body.get("detail"), list)
