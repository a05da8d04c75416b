"""Run manifest generation service."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


class ManifestService:
    """Collects what a deployment produced and writes it as JSON.

    Unlike the resume state, the manifest is written for every run and is
    meant for the operator: which image went where, which task definition
    revision was registered, and how long each step took.
    """

    def __init__(self, manifest_file: str, logger):
        self.manifest_file = manifest_file
        self.logger = logger
        self.manifest: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "image": {
                "local": None,
                "uri": None,
                "digest": None,
                "platform": None,
            },
            "migrations": [],
            "task_definition": None,
            "steps": [],
            "error": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any]):
        self.manifest["run_id"] = run_id
        self.manifest["status"] = "running"
        self.manifest["started_at"] = self._now()
        self.manifest["metadata"] = metadata
        self.write()

    def set_image(self, **fields: Optional[str]):
        unknown = set(fields) - set(self.manifest["image"])
        if unknown:
            raise KeyError(f"Unknown image fields: {', '.join(sorted(unknown))}")
        self.manifest["image"].update(fields)
        self.write()

    def add_migration(self, name: str, status: str):
        self.manifest["migrations"].append({"name": name, "status": status})
        self.write()

    def set_task_definition(self, arn: str):
        self.manifest["task_definition"] = arn
        self.write()

    def step_started(self, step_name: str, details: Optional[Dict[str, Any]] = None):
        self.manifest["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": details or {},
                "error": None,
            }
        )
        self.write()

    def step_finished(
        self,
        step_name: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        for step in reversed(self.manifest["steps"]):
            if step["name"] == step_name and step["status"] == "running":
                step["status"] = status
                step["finished_at"] = self._now()
                step["error"] = error
                if details:
                    step["details"].update(details)
                step["duration_seconds"] = self._elapsed(step["started_at"], step["finished_at"])
                break
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        self.manifest["status"] = status
        self.manifest["finished_at"] = self._now()
        if self.manifest.get("started_at"):
            self.manifest["duration_seconds"] = self._elapsed(
                self.manifest["started_at"], self.manifest["finished_at"]
            )
        self.manifest["error"] = error
        self.write()

    def write(self):
        manifest_dir = os.path.dirname(self.manifest_file) or "."
        os.makedirs(manifest_dir, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(prefix="run-manifest-", suffix=".json", dir=manifest_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.manifest, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.manifest_file)
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            if os.path.exists(temp_path):
                os.remove(temp_path)

    def summary_rows(self) -> List[Tuple[str, str]]:
        image = self.manifest["image"]
        rows = [
            ("Image", image["uri"] or image["local"] or "-"),
            ("Digest", image["digest"] or "-"),
            ("Platform", image["platform"] or "-"),
        ]
        applied = [item["name"] for item in self.manifest["migrations"] if item["status"] == "applied"]
        rows.append(("Migrations", ", ".join(applied) if applied else "none applied"))
        rows.append(("Task definition", self.manifest["task_definition"] or "-"))
        skipped = [step["name"] for step in self.manifest["steps"] if step["status"] == "skipped"]
        if skipped:
            rows.append(("Skipped (resume)", ", ".join(skipped)))
        return rows

    @staticmethod
    def _elapsed(started_at: str, finished_at: str) -> float:
        return (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
