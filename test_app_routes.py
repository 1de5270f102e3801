import io
import json

import openpyxl
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import gateway.app as app_module
from services.data_source_service import DATA_SOURCE_ADAPTERS

ORG = 101
HEADERS = {"X-Org-Id": str(ORG)}


@pytest.fixture
def client():
    with TestClient(app_module.app) as c:
        yield c


def _job_body(**overrides):
    body = {
        "name": "Hourly census",
        "schedule": {"type": "INTERVAL", "intervalMs": 3600000},
        "dataSource": {"type": "API", "url": "https://census.example/api"},
        "targetUrl": "https://hooks.example/census",
    }
    body.update(overrides)
    return body


# ============================================================================
# Auth
# ============================================================================

def test_require_admin_api_key_rejects_when_missing_key(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", None)
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("any")
    assert exc.value.status_code == 503


def test_require_admin_api_key_rejects_invalid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("wrong")
    assert exc.value.status_code == 401


def test_require_admin_api_key_accepts_valid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    assert app_module.require_admin_api_key("secret") is None


def test_routes_enforce_api_key(client, monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")

    assert client.get("/api/events", headers=HEADERS).status_code == 401
    assert client.get("/api/events", headers={**HEADERS, "X-API-Key": "secret"}).status_code == 200


@pytest.mark.parametrize("value", [None, "acme"])
def test_org_header_is_required(client, value):
    headers = {"X-Org-Id": value} if value else {}
    assert client.get("/api/events", headers=headers).status_code == 400


def test_health(client):
    assert client.get("/api/health").json()["status"] == "ok"


# ============================================================================
# Events
# ============================================================================

class TestPush:
    def test_accepted(self, client):
        resp = client.post("/api/events/push", headers=HEADERS,
                           json={"eventType": "ADMISSION", "payload": {"id": 77, "ward": "B"}})
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "accepted"
        assert body["eventId"].startswith(f"push-{ORG}-ADMISSION-")

        event = client.get(f"/api/events/{body['eventId']}", headers=HEADERS).json()
        assert event["status"] == "VALIDATED"
        assert event["payload"] == {"id": 77, "ward": "B"}

    def test_duplicate_returns_existing_event(self, client):
        body = {"eventType": "ADMISSION", "payload": {"id": 77}}
        first = client.post("/api/events/push", headers=HEADERS, json=body).json()
        resp = client.post("/api/events/push", headers=HEADERS, json=body)

        assert resp.status_code == 200
        assert resp.json() == {"eventId": first["eventId"], "status": "duplicate"}

    @pytest.mark.parametrize("body", [
        {"payload": {"id": 1}},
        {"eventType": "ADMISSION"},
        {"eventType": "ADMISSION", "payload": [1]},
        ["not", "an", "object"],
    ])
    def test_invalid_body(self, client, body):
        resp = client.post("/api/events/push", headers=HEADERS, json=body)
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"


class TestEventQueries:
    def test_list_and_filter(self, client):
        client.post("/api/events/push", headers=HEADERS, json={"eventType": "A", "payload": {"id": 1}})
        client.post("/api/events/push", headers=HEADERS, json={"eventType": "B", "payload": {"id": 2}})

        resp = client.get("/api/events", params={"eventType": "B"}, headers=HEADERS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["events"][0]["eventType"] == "B"
        assert "payload" not in data["events"][0]

    def test_other_org_sees_nothing(self, client):
        client.post("/api/events/push", headers=HEADERS, json={"eventType": "A", "payload": {"id": 1}})
        assert client.get("/api/events", headers={"X-Org-Id": "202"}).json()["total"] == 0

    def test_unknown_event_is_404(self, client):
        resp = client.get("/api/events/nope", headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    def test_stats_and_checkpoints(self, client):
        client.post("/api/events/push", headers=HEADERS, json={"eventType": "A", "payload": {"id": 1}})

        stats = client.get("/api/events/stats", headers=HEADERS).json()
        assert stats["total"] == 1

        [cp] = client.get("/api/events/checkpoints", headers=HEADERS).json()["checkpoints"]
        assert cp["source"] == "http_push"

    def test_gaps_require_source(self, client):
        assert client.get("/api/events/gaps", headers=HEADERS).status_code == 400
        resp = client.get("/api/events/gaps", params={"source": "http_push", "hoursBack": 2}, headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["totalGaps"] == 0


class TestImport:
    def test_json_body_partial_success(self, client):
        events = [
            {"eventType": "LAB_RESULT", "payload": {"id": 1}},
            {"eventType": "LAB_RESULT", "payload": "bad"},
        ]
        resp = client.post("/api/events/import", headers=HEADERS, json={"events": events})

        assert resp.status_code == 207
        assert resp.json()["summary"] == {"total": 2, "successful": 1, "failed": 1, "duplicates": 0}

    def test_all_successful_is_200(self, client):
        resp = client.post("/api/events/import", headers=HEADERS,
                           json=[{"eventType": "LAB_RESULT", "payload": {"id": 1}}])
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_batch_cap(self, client):
        events = [{"eventType": "X", "payload": {"id": i}} for i in range(1001)]
        resp = client.post("/api/events/import", headers=HEADERS, json={"events": events})

        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_COUNT"
        assert client.get("/api/events", headers=HEADERS).json()["total"] == 0

    def test_no_input(self, client):
        resp = client.post("/api/events/import", headers=HEADERS, json={"something": "else"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "NO_INPUT"

    def test_csv_upload(self, client):
        content = (
            "eventType,orgId,payload,source\n"
            f'LAB_RESULT,{ORG},"{{""id"": 1}}",lab\n'
            f'LAB_RESULT,{ORG},not-json,lab\n'
        )
        resp = client.post(
            "/api/events/import", headers=HEADERS, params={"dryRun": "true"},
            files={"file": ("events.csv", content, "text/csv")},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"]["successful"] == 1
        assert body["parseErrors"][0]["row"] == 3

    def test_unsupported_upload(self, client):
        resp = client.post("/api/events/import", headers=HEADERS,
                           files={"file": ("events.txt", b"hello", "text/plain")})
        assert resp.status_code == 400
        assert resp.json()["code"] == "UNSUPPORTED_FORMAT"

    def test_xlsx_upload(self, client):
        body = client.get("/api/events/import/template", params={"format": "xlsx"}).content
        workbook = openpyxl.load_workbook(io.BytesIO(body))
        sheet = workbook.active
        sheet["B2"] = ORG
        sheet["B3"] = ORG
        sheet.append(["LAB_RESULT", ORG, "not-json"])
        buffer = io.BytesIO()
        workbook.save(buffer)

        resp = client.post(
            "/api/events/import", headers=HEADERS, params={"dryRun": "true"},
            files={"file": ("events.xlsx", buffer.getvalue(), "application/octet-stream")},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"]["successful"] == 2
        assert [e["row"] for e in body["parseErrors"]] == [4]

    def test_template(self, client):
        resp = client.get("/api/events/import/template", params={"format": "json"})
        assert resp.status_code == 200
        assert len(json.loads(resp.text)["events"]) == 2
        assert client.get("/api/events/import/template", params={"format": "xml"}).status_code == 422

        xlsx = client.get("/api/events/import/template", params={"format": "xlsx"})
        assert xlsx.status_code == 200
        assert xlsx.headers["content-type"].startswith("application/vnd.openxmlformats")
        assert 'filename="event-import-template.xlsx"' in xlsx.headers["content-disposition"]


# ============================================================================
# Scheduled jobs
# ============================================================================

class TestScheduledJobs:
    def test_create_rejects_short_interval(self, client):
        resp = client.post("/api/scheduled-jobs", headers=HEADERS,
                           json=_job_body(schedule={"type": "INTERVAL", "intervalMs": 30000}))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Interval must be at least 60000ms (1 minute)"

    def test_create_rejects_missing_target(self, client):
        body = _job_body()
        del body["targetUrl"]
        assert client.post("/api/scheduled-jobs", headers=HEADERS, json=body).status_code == 400

    def test_create_rejects_unknown_timezone(self, client):
        resp = client.post("/api/scheduled-jobs", headers=HEADERS,
                           json=_job_body(schedule={"type": "INTERVAL", "intervalMs": 3600000,
                                                    "timezone": "Mars/Olympus_Mons"}))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid schedule timezone"
        assert client.get("/api/scheduled-jobs", headers=HEADERS).json()["jobs"] == []

    def test_crud_and_scheduling(self, client):
        created = client.post("/api/scheduled-jobs", headers=HEADERS, json=_job_body())
        assert created.status_code == 201
        job = created.json()
        scheduler = client.app.state.scheduler
        assert scheduler.is_scheduled(job["id"])

        fetched = client.get(f"/api/scheduled-jobs/{job['id']}", headers=HEADERS).json()
        assert fetched["name"] == "Hourly census"
        assert fetched["nextRun"] is not None

        [listed] = client.get("/api/scheduled-jobs", headers=HEADERS).json()["jobs"]
        assert listed["lastExecution"] is None

        updated = client.put(f"/api/scheduled-jobs/{job['id']}", headers=HEADERS, json={"isActive": False})
        assert updated.status_code == 200
        assert updated.json()["isActive"] is False
        assert updated.json()["schedule"]["intervalMs"] == 3600000
        assert not scheduler.is_scheduled(job["id"])

        assert client.delete(f"/api/scheduled-jobs/{job['id']}", headers=HEADERS).status_code == 200
        assert client.get(f"/api/scheduled-jobs/{job['id']}", headers=HEADERS).status_code == 404

    def test_jobs_are_scoped_to_org(self, client):
        job = client.post("/api/scheduled-jobs", headers=HEADERS, json=_job_body()).json()
        assert client.get(f"/api/scheduled-jobs/{job['id']}", headers={"X-Org-Id": "202"}).status_code == 404

    def test_execute_is_fire_and_forget(self, client, monkeypatch):
        job = client.post("/api/scheduled-jobs", headers=HEADERS, json=_job_body()).json()
        triggered = []

        def fake_trigger(job_id):
            triggered.append(job_id)
            return len(triggered) == 1

        monkeypatch.setattr(client.app.state.scheduler, "trigger_job", fake_trigger)

        resp = client.post(f"/api/scheduled-jobs/{job['id']}/execute", headers=HEADERS)
        assert resp.status_code == 202
        assert resp.json() == {"status": "triggered", "jobId": job["id"]}

        again = client.post(f"/api/scheduled-jobs/{job['id']}/execute", headers=HEADERS)
        assert again.status_code == 409
        assert again.json()["code"] == "JOB_ALREADY_RUNNING"

    def test_execute_unknown_job(self, client):
        assert client.post("/api/scheduled-jobs/999/execute", headers=HEADERS).status_code == 404

    def test_logs_for_unknown_job(self, client):
        assert client.get("/api/scheduled-jobs/999/logs", headers=HEADERS).status_code == 404

    def test_logs_envelope(self, client):
        job = client.post("/api/scheduled-jobs", headers=HEADERS, json=_job_body()).json()
        resp = client.get(f"/api/scheduled-jobs/{job['id']}/logs", headers=HEADERS)
        assert resp.json() == {"logs": [], "total": 0, "limit": 50, "offset": 0}

    def test_test_datasource(self, client, monkeypatch):
        monkeypatch.setitem(DATA_SOURCE_ADAPTERS, "API", lambda config, context: [{"bed": i} for i in range(3)])
        resp = client.post("/api/scheduled-jobs/test-datasource", headers=HEADERS,
                           json={"dataSource": {"type": "API", "url": "https://census.example"}})
        assert resp.status_code == 200
        assert resp.json()["recordsFetched"] == 3

        bad = client.post("/api/scheduled-jobs/test-datasource", headers=HEADERS,
                          json={"dataSource": {"type": "FTP"}})
        assert bad.status_code == 400
        assert bad.json()["success"] is False

    def test_scheduler_status(self, client):
        status = client.get("/api/scheduler/status").json()
        assert status["running"] is True
        assert status["inFlight"] == []
