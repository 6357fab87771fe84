"""Run report generation service."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class RunReportService:
    """Collects per-environment outcomes and writes the run report JSON.

    With no ``report_file`` the report is only kept in memory.
    """

    def __init__(self, report_file: Optional[str], logger):
        self.report_file = report_file
        self.logger = logger
        self.report: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "environments": [],
            "error": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any]):
        self.report["run_id"] = run_id
        self.report["status"] = "running"
        self.report["started_at"] = self._now()
        self.report["metadata"] = metadata
        self.write()

    def _entry(self, environment: str) -> Dict[str, Any]:
        for entry in reversed(self.report["environments"]):
            if entry["name"] == environment:
                return entry
        entry = {
            "name": environment,
            "status": "pending",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "states": [],
            "details": {},
            "error": None,
            "reclamation": None,
        }
        self.report["environments"].append(entry)
        return entry

    def environment_started(self, environment: str, details: Optional[Dict[str, Any]] = None):
        entry = self._entry(environment)
        entry["status"] = "running"
        entry["started_at"] = self._now()
        entry["details"].update(details or {})
        self.write()

    def record_state(self, environment: str, state: str):
        self._entry(environment)["states"].append({"state": state, "at": self._now()})
        self.write()

    def environment_finished(
        self,
        environment: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        entry = self._entry(environment)
        entry["status"] = status
        entry["finished_at"] = self._now()
        entry["error"] = error
        if details:
            entry["details"].update(details)
        if entry["started_at"]:
            started_at = datetime.fromisoformat(entry["started_at"])
            finished_at = datetime.fromisoformat(entry["finished_at"])
            entry["duration_seconds"] = (finished_at - started_at).total_seconds()
        self.write()

    def record_reclamation(self, environment: str, ok: bool, detail: Optional[str] = None):
        self._entry(environment)["reclamation"] = {"ok": ok, "detail": detail}
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        self.report["status"] = status
        self.report["finished_at"] = self._now()
        if self.report.get("started_at"):
            started_at = datetime.fromisoformat(self.report["started_at"])
            finished_at = datetime.fromisoformat(self.report["finished_at"])
            self.report["duration_seconds"] = (finished_at - started_at).total_seconds()
        self.report["error"] = error
        self.write()

    def write(self):
        if not self.report_file:
            return
        directory = os.path.dirname(self.report_file) or "."
        os.makedirs(directory, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(prefix="axon-report-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.report, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.report_file)
        except OSError as exc:
            self.logger.warning("Could not write report file '%s': %s", self.report_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
