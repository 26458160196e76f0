from __future__ import annotations

import json
import os
import tempfile
import unittest

from monitor.local_alerter import LocalAlerter
from utils.log_contracts import gate_decision_event


class LocalAlerterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "nested", "alerts.jsonl")
        self.alerter = LocalAlerter(self.path, run_tag="session_1")

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def _rows(self) -> list[dict]:
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    async def test_plain_payload_becomes_status_event(self) -> None:
        with self.assertLogs("monitor.local_alerter", level="ERROR"):
            await self.alerter.send_event({"state": "error", "reason": "critical_error", "message": "boom", "level": "ERROR"})
        row = self._rows()[0]
        self.assertEqual(row["schema_name"], "status_event.v1")
        self.assertEqual(row["reason_code"], "CYCLE_CRITICAL_ERROR")
        self.assertEqual(row["run_tag"], "session_1")

    async def test_stamped_events_are_written_unchanged(self) -> None:
        event = gate_decision_event({"cycle": 3, "decision_stage": "position_gate", "reason": "below_minimum"})
        await self.alerter.send_event(event)
        await self.alerter.send_event({"state": "idle"})
        rows = self._rows()
        self.assertEqual(rows[0]["event_id"], event["event_id"])
        self.assertEqual(rows[0]["reason_code"], "GATE_BELOW_MINIMUM")
        self.assertEqual(rows[1]["reason_code"], "STATUS_STATE_IDLE")


if __name__ == "__main__":
    unittest.main()
