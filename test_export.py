import csv
import io
import time
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

import gateway.app as app_module
from gateway.database import SessionLocal
from services import event_audit_service
from services.event_audit_service import EXPORT_HEADERS, EventAuditService

ORG = 101
BASE = datetime(2024, 8, 1, 10, 0)


class CountingSessions:
    """Wraps SessionLocal to count sessions opened and closed."""

    def __init__(self):
        self.opened = 0
        self.closed = 0

    def __call__(self):
        session = SessionLocal()
        self.opened += 1
        close = session.close

        def counted_close():
            self.closed += 1
            close()

        session.close = counted_close
        return session


def _seed(count, org_id=ORG):
    ids = []
    for i in range(count):
        record = EventAuditService.build_record(
            org_id=org_id, event_type="LAB_RESULT", payload={"id": i},
            source="lab-feed", received_at=BASE + timedelta(minutes=i),
        )
        EventAuditService.record_event_audit(record)
        ids.append(record["event_id"])
    return ids


@pytest.fixture
def client():
    with TestClient(app_module.app) as c:
        yield c


class TestIterExportCsv:
    def test_header_then_one_chunk_per_page(self):
        ids = _seed(5)
        chunks = list(EventAuditService.iter_export_csv(ORG, {}, chunk_rows=2))

        assert len(chunks) == 4
        assert next(csv.reader(io.StringIO(chunks[0]))) == EXPORT_HEADERS
        rows = [row for chunk in chunks[1:] for row in csv.reader(io.StringIO(chunk))]
        assert [r[0] for r in rows] == ids
        assert all(len(r) == len(EXPORT_HEADERS) for r in rows)

    def test_empty_export_is_header_only(self):
        chunks = list(EventAuditService.iter_export_csv(ORG, {}))
        assert len(chunks) == 1

    def test_filters_apply(self):
        _seed(3)
        _seed(2, org_id=202)
        chunks = list(EventAuditService.iter_export_csv(202, {"source": "lab-feed"}))
        rows = list(csv.reader(io.StringIO("".join(chunks))))
        assert len(rows) == 3

    def test_abandoned_export_holds_no_session(self, monkeypatch):
        _seed(10)
        sessions = CountingSessions()
        monkeypatch.setattr(event_audit_service, "SessionLocal", sessions)

        chunks = EventAuditService.iter_export_csv(ORG, {}, chunk_rows=2)
        next(chunks)
        next(chunks)
        next(chunks)
        assert sessions.opened == 2
        assert sessions.closed == sessions.opened

        chunks.close()
        assert sessions.closed == sessions.opened


class TestExportRoute:
    def test_streams_csv(self, client):
        ids = _seed(3)
        resp = client.get("/api/events/export", headers={"X-Org-Id": str(ORG)})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "attachment" in resp.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(resp.text)))
        assert rows[0] == EXPORT_HEADERS
        assert [r[0] for r in rows[1:]] == ids

    def test_times_out_before_first_chunk(self, client, monkeypatch):
        def slow_export(org_id, filters=None, chunk_rows=200):
            time.sleep(1)
            yield "header\n"

        monkeypatch.setattr(app_module, "EXPORT_MIN_TIMEOUT_MS", 0)
        monkeypatch.setattr(EventAuditService, "iter_export_csv", staticmethod(slow_export))

        resp = client.get("/api/events/export", params={"timeoutMs": 50}, headers={"X-Org-Id": str(ORG)})
        assert resp.status_code == 408
        assert resp.json()["code"] == "EXPORT_TIMEOUT"

    def test_minimum_timeout_is_enforced(self, client, monkeypatch):
        _seed(1)
        resp = client.get("/api/events/export", params={"timeoutMs": 1}, headers={"X-Org-Id": str(ORG)})
        assert resp.status_code == 200

    def _recording_export(self, monkeypatch):
        real_export = EventAuditService.iter_export_csv
        produced, closed = [], []

        def recording_export(org_id, filters=None, chunk_rows=200):
            try:
                for chunk in real_export(org_id, filters, chunk_rows=2):
                    produced.append(chunk)
                    yield chunk
            finally:
                closed.append(True)

        monkeypatch.setattr(EventAuditService, "iter_export_csv", staticmethod(recording_export))
        return produced, closed

    def test_disconnect_stops_paging(self, client, monkeypatch):
        _seed(10)
        produced, closed = self._recording_export(monkeypatch)

        async def disconnected(self):
            return True

        monkeypatch.setattr(Request, "is_disconnected", disconnected)

        resp = client.get("/api/events/export", headers={"X-Org-Id": str(ORG)})

        assert resp.status_code == 200
        assert len(produced) == 2
        assert closed == [True]
        assert len(list(csv.reader(io.StringIO(resp.text)))) == 3

    def test_deadline_truncates_stream(self, client, monkeypatch):
        _seed(10)
        produced, closed = self._recording_export(monkeypatch)
        ticks = iter([0.0, 0.0])
        monkeypatch.setattr(app_module, "time", SimpleNamespace(monotonic=lambda: next(ticks, 1e9)))

        resp = client.get("/api/events/export", headers={"X-Org-Id": str(ORG)})

        assert resp.status_code == 200
        assert len(produced) == 2
        assert closed == [True]
