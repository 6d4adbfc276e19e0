from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from urllib.parse import quote

import httpx
from fastapi.testclient import TestClient

from demo_fixtures import build_dataset
from settlements.client import HttpSettlementBackend
from settlements.config import load_settings
from settlements.demo_backend import create_app as create_demo_app
from settlements.main import create_app

JANUARY = {"insurer_id": 1, "period_start": "2024-01-01", "period_end": "2024-01-31"}


class OperatorApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        demo = create_demo_app(build_dataset(), db_path=Path(self._tmp.name) / "settlements.db", page_size=5)
        settings = load_settings(min_visible_ms=0, initial_pages=1, prefetch_ahead=1)

        def backend_factory() -> HttpSettlementBackend:
            http = httpx.AsyncClient(transport=httpx.ASGITransport(app=demo), base_url="http://demo/api")
            return HttpSettlementBackend(http, settings)

        self.client = TestClient(create_app(backend_factory, settings=settings))
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self._tmp.cleanup()

    def _session(self) -> str:
        resp = self.client.post("/api/v1/sessions")
        self.assertEqual(resp.status_code, 201)
        return resp.json()["session_id"]

    def _ready_session(self) -> tuple[str, str]:
        sid = self._session()
        resp = self.client.post(f"/api/v1/sessions/{sid}/preview", json=JANUARY)
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual(body["state"], "ready")
        handle = body["draft"]["aggregates"][0]["cache_handle"]
        return sid, quote(handle, safe="")

    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["ok"])

    def test_preview_exclude_and_confirm(self) -> None:
        sid, handle = self._ready_session()
        draft = self.client.get(f"/api/v1/sessions/{sid}/draft").json()["draft"]
        self.assertEqual(draft["total_included_count"], 12)
        self.assertEqual(draft["total_amount"], 1380)

        page = self.client.get(f"/api/v1/sessions/{sid}/agreements/{handle}/pages/0").json()
        self.assertFalse(page["failed"])
        self.assertEqual(page["page_count"], 3)
        self.assertEqual([r["id"] for r in page["rows"]], [1, 2, 3, 4, 5])

        # 11 sits on a page that has not been loaded yet
        event = self.client.post(
            f"/api/v1/sessions/{sid}/agreements/{handle}/exclusions", json={"ids": [2, 11]}
        ).json()
        self.assertEqual(event["excluded_ids"], [2])
        self.assertEqual(event["total_services"], 11)
        self.assertEqual(event["subtotal"], 1300)

        toggled = self.client.post(f"/api/v1/sessions/{sid}/agreements/{handle}/exclusions/5/toggle").json()
        self.assertEqual(toggled["excluded_ids"], [2, 5])
        restored = self.client.delete(f"/api/v1/sessions/{sid}/agreements/{handle}/exclusions/5").json()
        self.assertEqual(restored["excluded_ids"], [2])

        page = self.client.get(f"/api/v1/sessions/{sid}/agreements/{handle}/pages/0").json()
        self.assertEqual([r["id"] for r in page["rows"] if r["excluded"]], [2])

        totals = self.client.get(f"/api/v1/sessions/{sid}/totals").json()
        self.assertEqual(totals["total_included_count"], 11)
        self.assertEqual(totals["total_amount"], 1300)
        self.assertEqual(totals["excluded_ids"], [2])

        confirmed = self.client.post(f"/api/v1/sessions/{sid}/confirm")
        self.assertEqual(confirmed.status_code, 200, confirmed.text)
        body = confirmed.json()
        settlement_id = body["settlement_id"]
        self.assertIsInstance(settlement_id, int)
        self.assertEqual(body["state"], "created")
        self.assertIsNone(body["draft"])

        listed = self.client.get("/api/v1/settlements", params={"insurer_id": 1}).json()
        self.assertEqual(len(listed), 1)
        self.assertEqual(listed[0]["total"], 1300)
        self.assertEqual(listed[0]["provided_services_count"], 11)

        informed = self.client.put(
            f"/api/v1/settlements/{settlement_id}/inform",
            json={"informed_amount": "1300.00", "informed_date": "2024-02-05"},
        )
        self.assertEqual(informed.json()["status"], "INFORMED")
        cancelled = self.client.put(f"/api/v1/settlements/{settlement_id}/cancel", json={"observations": "redo"})
        self.assertEqual(cancelled.json()["status"], "CANCEL")

    def test_no_active_plans_is_a_warning(self) -> None:
        sid = self._session()
        resp = self.client.post(f"/api/v1/sessions/{sid}/preview", json={**JANUARY, "insurer_id": 2})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["level"], "warning")
        state = self.client.get(f"/api/v1/sessions/{sid}/draft").json()
        self.assertEqual(state["state"], "idle")
        self.assertIsNone(state["draft"])

    def test_special_rule_without_plan_is_rejected(self) -> None:
        sid = self._session()
        resp = self.client.post(
            f"/api/v1/sessions/{sid}/preview",
            json={**JANUARY, "type": "ESPECIAL", "special_rules": [{"type": "FIXED_AMOUNT", "amount": "50"}]},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["level"], "warning")
        self.assertEqual(self.client.get(f"/api/v1/sessions/{sid}/draft").json()["state"], "idle")

    def test_incomplete_filters_and_missing_draft(self) -> None:
        sid = self._session()
        resp = self.client.post(f"/api/v1/sessions/{sid}/preview", json={"insurer_id": 1})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(f"/api/v1/sessions/{sid}/agreements/x/exclusions", json={"ids": [1]})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(self.client.post(f"/api/v1/sessions/{sid}/confirm").status_code, 409)

    def test_unknown_session(self) -> None:
        self.assertEqual(self.client.get("/api/v1/sessions/nope/draft").status_code, 404)
        sid = self._session()
        self.assertEqual(self.client.delete(f"/api/v1/sessions/{sid}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/v1/sessions/{sid}/totals").status_code, 404)

    def test_idle_sessions_expire(self) -> None:
        now = [1000.0]
        settings = load_settings(min_visible_ms=0, session_ttl=60)
        demo = create_demo_app(build_dataset(), db_path=Path(self._tmp.name) / "expiry.db")

        def backend_factory() -> HttpSettlementBackend:
            http = httpx.AsyncClient(transport=httpx.ASGITransport(app=demo), base_url="http://demo/api")
            return HttpSettlementBackend(http, settings)

        with TestClient(create_app(backend_factory, settings=settings, clock=lambda: now[0])) as client:
            stale = client.post("/api/v1/sessions").json()["session_id"]
            now[0] += 30
            active = client.post("/api/v1/sessions").json()["session_id"]
            now[0] += 40
            self.assertEqual(client.get(f"/api/v1/sessions/{active}/draft").status_code, 200)
            self.assertEqual(client.get(f"/api/v1/sessions/{stale}/draft").status_code, 404)
            self.assertEqual(client.get("/health").json()["sessions"], 1)

    def test_unknown_handle_and_page(self) -> None:
        sid, handle = self._ready_session()
        self.assertEqual(self.client.get(f"/api/v1/sessions/{sid}/agreements/other/pages/0").status_code, 404)
        self.assertEqual(self.client.get(f"/api/v1/sessions/{sid}/agreements/{handle}/pages/7").status_code, 404)
        ignored = self.client.post(f"/api/v1/sessions/{sid}/agreements/other/exclusions", json={"ids": [1]})
        self.assertTrue(ignored.json()["ignored"])


if __name__ == "__main__":
    unittest.main()
