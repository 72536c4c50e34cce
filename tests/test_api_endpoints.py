from __future__ import annotations

import unittest
from io import BytesIO

from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy import select

from _db_support import make_engine, make_session_factory, override_get_db, policy_store
from flextime.db import get_db
from flextime.dependencies import get_policy_store
from flextime.main import app
from flextime.models import AuditLog


class ApiEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.SessionLocal = make_session_factory(self.engine)
        self.store = policy_store()
        app.dependency_overrides[get_db] = override_get_db(self.SessionLocal)
        app.dependency_overrides[get_policy_store] = lambda: self.store
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()

    def _create_employee(self, name: str = "Kim Minji") -> int:
        response = self.client.post(
            "/api/admin/employees",
            json={"full_name": name, "hourly_rate": 10000},
            headers={"X-Actor-Id": "hr-lead"},
        )
        self.assertEqual(response.status_code, 201)
        return response.json()["id"]

    def _punch(self, employee_id: int, ts: str, code: str, source: str = "TERMINAL"):  # type: ignore[no-untyped-def]
        return self.client.post(
            "/api/punches",
            json={"employee_id": employee_id, "ts": ts, "source": source, "raw_action_code": code},
        )

    def test_create_employee_is_audited(self) -> None:
        employee_id = self._create_employee()

        listing = self.client.get("/api/admin/employees")
        self.assertEqual([item["id"] for item in listing.json()], [employee_id])
        with self.SessionLocal() as db:
            audit = db.scalar(select(AuditLog).where(AuditLog.action == "EMPLOYEE_CREATED"))
            self.assertEqual(audit.actor_id, "hr-lead")

    def test_punch_then_duplicate(self) -> None:
        employee_id = self._create_employee()

        first = self._punch(employee_id, "2026-03-02T09:00:00", "RELEASE")
        second = self._punch(employee_id, "2026-03-02T09:02:00", "CHECK_IN", source="WEB_CLIENT")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["outcome"], "INSERTED")
        self.assertEqual(second.status_code, 200)
        body = second.json()
        self.assertFalse(body["accepted"])
        self.assertEqual(body["outcome"], "DUPLICATE_DETECTED")
        self.assertEqual(body["conflicting_record"]["source"], "TERMINAL")
        self.assertIn("X-Request-Id", second.headers)

    def test_unknown_employee_uses_error_envelope(self) -> None:
        response = self._punch(404, "2026-03-02T09:00:00", "RELEASE")

        self.assertEqual(response.status_code, 404)
        error = response.json()["error"]
        self.assertEqual(error["code"], "EMPLOYEE_NOT_FOUND")
        self.assertIn("request_id", error)

    def test_validation_error_envelope(self) -> None:
        response = self.client.post("/api/punches", json={"employee_id": 1, "source": "FAX"})

        self.assertEqual(response.status_code, 422)
        error = response.json()["error"]
        self.assertEqual(error["code"], "VALIDATION_ERROR")
        self.assertTrue(error["details"]["errors"])

    def test_batch_endpoint(self) -> None:
        employee_id = self._create_employee()
        response = self.client.post(
            "/api/punches/batch",
            json={
                "punches": [
                    {"employee_id": employee_id, "ts": "2026-03-02T09:00:00", "source": "TERMINAL", "raw_action_code": "RELEASE"},
                    {"employee_id": employee_id, "ts": "2026-03-02T18:00:00", "source": "TERMINAL", "raw_action_code": "SET"},
                    {"employee_id": employee_id, "ts": "2026-03-02T12:00:00", "source": "TERMINAL", "raw_action_code": "ALARM"},
                ]
            },
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["accepted_count"], 2)
        self.assertEqual(body["rejected_count"], 1)
        self.assertEqual(body["verdicts"][2]["outcome"], "UNMAPPED")

        exceptions = self.client.get("/api/admin/exceptions", params={"kind": "UNMAPPED_ACTION_CODE"})
        self.assertEqual(len(exceptions.json()), 1)

    def test_terminal_feed_upload(self) -> None:
        employee_id = self._create_employee()
        text = f"2026-03-02 22:00 {employee_id} RELEASE\n2026-03-02 30:00 {employee_id} SET N\nbad line\n"

        response = self.client.post("/api/punches/terminal-feed", json={"text": text})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["parsed_count"], 2)
        self.assertEqual(len(body["parse_errors"]), 1)
        self.assertEqual(body["batch"]["accepted_count"], 2)

        days = self.client.get(f"/api/admin/employees/{employee_id}/days").json()
        self.assertEqual(len(days), 1)
        self.assertEqual(days[0]["work_date"], "2026-03-02")
        self.assertEqual(days[0]["breakdown"]["night_hours"], 8.0)
        self.assertEqual(days[0]["breakdown"]["net_work_hours"], 7.0)
        self.assertEqual(days[0]["breakdown"]["check_out_clock"], "30:00")
        self.assertEqual(
            days[0]["breakdown"]["night_periods"],
            [{"start_clock": "22:00", "end_clock": "30:00", "hours": 8.0}],
        )

    def test_resolve_exception(self) -> None:
        employee_id = self._create_employee()
        verdict = self._punch(employee_id, "2026-03-02T09:00:00", "ALARM").json()

        resolved = self.client.post(
            f"/api/admin/exceptions/{verdict['review_item_id']}/resolve",
            json={"note": "panel test"},
        )
        again = self.client.post(
            f"/api/admin/exceptions/{verdict['review_item_id']}/resolve",
            json={"note": "panel test"},
        )

        self.assertEqual(resolved.status_code, 200)
        self.assertTrue(resolved.json()["resolved"])
        self.assertEqual(resolved.json()["resolved_by"], "admin")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"]["code"], "REVIEW_ITEM_ALREADY_RESOLVED")

    def test_policy_create_invalidates_store(self) -> None:
        response = self.client.post(
            "/api/admin/policies",
            json={
                "name": "2026",
                "effective_from": "2026-01-01",
                "standard_weekly_hours": 40,
                "source_priority": ["WEB_CLIENT", "TERMINAL"],
            },
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["source_priority"], "WEB_CLIENT,TERMINAL")

        duplicate = self.client.post(
            "/api/admin/policies",
            json={"name": "bad", "effective_from": "2026-01-01", "source_priority": ["TERMINAL", "TERMINAL"]},
        )
        self.assertEqual(duplicate.status_code, 422)

    def test_period_lifecycle(self) -> None:
        employee_id = self._create_employee()
        for day in range(2, 7):
            self._punch(employee_id, f"2026-03-0{day}T08:00:00", "RELEASE")
            self._punch(employee_id, f"2026-03-0{day}T19:00:00", "SET")

        created = self.client.post(
            "/api/admin/periods",
            json={"name": "2026-W10", "start_date": "2026-03-02", "end_date": "2026-03-08"},
        )
        self.assertEqual(created.status_code, 201)
        period_id = created.json()["id"]

        recomputed = self.client.post(f"/api/admin/periods/{period_id}/recompute")
        self.assertEqual(recomputed.status_code, 200)
        self.assertEqual(recomputed.json()["results"][0]["overtime_allowance_hours"], 10.0)

        finalized = self.client.post(f"/api/admin/periods/{period_id}/finalize", headers={"X-Actor-Id": "payroll"})
        self.assertEqual(finalized.status_code, 200)
        self.assertEqual(finalized.json()["status"], "COMPLETED")

        # Late correction after completion.
        self._punch(employee_id, "2026-03-07T08:00:00", "RELEASE")
        self._punch(employee_id, "2026-03-07T19:00:00", "SET")

        locked = self.client.post(f"/api/admin/periods/{period_id}/recompute")
        self.assertEqual(locked.status_code, 409)
        self.assertEqual(locked.json()["error"]["code"], "SETTLEMENT_LOCKED")

        results = self.client.get(f"/api/admin/periods/{period_id}/results").json()
        self.assertEqual(results[0]["employee_full_name"], "Kim Minji")
        self.assertTrue(results[0]["finalized"])
        self.assertEqual(results[0]["monthly"][0]["month"], "2026-03")
        self.assertEqual(results[0]["monthly"][0]["work_days"], 5)
        self.assertEqual(results[0]["monthly"][0]["work_hours"], results[0]["total_actual_hours"])

        summary = self.client.get(f"/api/admin/periods/{period_id}/summary").json()
        self.assertEqual(summary["total_employees"], 1)
        self.assertEqual(summary["total_allowance_amount"], 150000.0)

        history = self.client.get(f"/api/admin/employees/{employee_id}/settlements").json()
        self.assertEqual(history[0]["period_status"], "COMPLETED")

        export = self.client.get(f"/api/admin/periods/{period_id}/export.xlsx")
        self.assertEqual(export.status_code, 200)
        workbook = load_workbook(BytesIO(export.content))
        self.assertEqual(workbook.sheetnames[1:], ["Results", "Monthly"])
        self.assertEqual(workbook["Results"].cell(row=2, column=2).value, "Kim Minji")
        self.assertEqual(workbook["Monthly"].cell(row=2, column=5).value, 50.0)

        reopened = self.client.post(f"/api/admin/periods/{period_id}/reopen", json={"reason": "late upload"})
        self.assertEqual(reopened.json()["status"], "ACTIVE")

    def test_finalize_blocked_reports_affected_employees(self) -> None:
        employee_id = self._create_employee()
        self._punch(employee_id, "2026-03-03T09:00:00", "RELEASE")
        period_id = self.client.post(
            "/api/admin/periods",
            json={"name": "2026-W10", "start_date": "2026-03-02", "end_date": "2026-03-08"},
        ).json()["id"]

        response = self.client.post(f"/api/admin/periods/{period_id}/finalize")

        self.assertEqual(response.status_code, 409)
        error = response.json()["error"]
        self.assertEqual(error["code"], "SETTLEMENT_BLOCKED")
        self.assertEqual(error["details"]["affected_employees"][0]["employee_id"], employee_id)

    def test_missing_period_is_404(self) -> None:
        response = self.client.get("/api/admin/periods/999/summary")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "PERIOD_NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
