"""Checkpoint file that lets an interrupted deployment continue."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ecsdeployer.errors import DeployerError


class StateService:
    """Persists per-step progress and step outputs of one deployment.

    Steps are keyed by name. Each entry keeps its last status and how many
    times it was attempted across resumed runs. Values a later step needs
    after a resume (the registered task definition, the migrations already
    applied) live under ``outputs``.
    """

    SCHEMA_VERSION = 2
    RESUME_KEYS = (
        "image_uri",
        "platform",
        "migrations_dir",
        "cluster",
        "service",
        "task_family",
        "stages",
    )

    def __init__(self, state_file: str, logger):
        self.state_file = state_file
        self.logger = logger

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.state_file):
            return None

        try:
            with open(self.state_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise DeployerError(f"Could not read state file '{self.state_file}': {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("steps", {}), dict):
            raise DeployerError(f"State file '{self.state_file}' has invalid format.")
        if data.get("schema_version") != self.SCHEMA_VERSION:
            raise DeployerError(
                f"State file '{self.state_file}' was written by an incompatible version. "
                "Remove it to start a fresh run."
            )
        return data

    def save(self, state: Dict[str, Any]):
        state["updated_at"] = self._now()
        state_dir = os.path.dirname(self.state_file) or "."
        os.makedirs(state_dir, exist_ok=True)

        # Write next to the target so os.replace stays on one filesystem.
        fd, temp_path = tempfile.mkstemp(prefix=".run-state-", suffix=".json", dir=state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(state, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.state_file)
        except OSError as exc:
            raise DeployerError(f"Could not write state file '{self.state_file}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)

    def initialize(
        self,
        metadata: Dict[str, Any],
        run_context: Dict[str, Any],
        resume: bool,
    ) -> Tuple[Dict[str, Any], bool]:
        previous = self.load()
        if resume and previous:
            self._check_same_deployment(previous.get("metadata", {}), metadata)
            return previous, True

        now = self._now()
        state = {
            "schema_version": self.SCHEMA_VERSION,
            "created_at": now,
            "updated_at": now,
            "status": "running",
            "metadata": metadata,
            "run_context": run_context,
            "current_step": None,
            "steps": {},
            "outputs": {},
            "last_error": None,
        }
        self.save(state)
        return state, False

    def mark_resumed(self, state: Dict[str, Any]):
        state["status"] = "running"
        state["current_step"] = None
        state["last_error"] = None
        self.save(state)

    def mark_step_started(self, state: Dict[str, Any], step_name: str):
        entry = self._step(state, step_name)
        entry["status"] = "running"
        entry["attempts"] += 1
        entry["started_at"] = self._now()
        entry["finished_at"] = None
        entry["error"] = None
        state["current_step"] = step_name
        self.save(state)

    def mark_step_completed(self, state: Dict[str, Any], step_name: str):
        entry = self._step(state, step_name)
        entry["status"] = "success"
        entry["finished_at"] = self._now()
        state["current_step"] = None
        self.save(state)

    def mark_step_failed(self, state: Dict[str, Any], step_name: str, error: str):
        entry = self._step(state, step_name)
        entry["status"] = "failed"
        entry["finished_at"] = self._now()
        entry["error"] = error
        state["status"] = "failed"
        state["last_error"] = error
        self.save(state)

    def mark_status(self, state: Dict[str, Any], status: str, error: Optional[str] = None):
        state["status"] = status
        if error:
            state["last_error"] = error
        self.save(state)

    def is_step_completed(self, state: Dict[str, Any], step_name: str) -> bool:
        return state.get("steps", {}).get(step_name, {}).get("status") == "success"

    def set_value(self, state: Dict[str, Any], key: str, value: Any):
        state.setdefault("outputs", {})[key] = value
        self.save(state)

    def get_value(self, state: Dict[str, Any], key: str, default: Any = None) -> Any:
        return state.get("outputs", {}).get(key, default)

    def _check_same_deployment(self, previous: Dict[str, Any], current: Dict[str, Any]):
        changes = [
            f"{key} (was {previous.get(key)!r}, now {current.get(key)!r})"
            for key in self.RESUME_KEYS
            if previous.get(key) != current.get(key)
        ]
        if changes:
            raise DeployerError(
                "Cannot resume a run with different inputs. Changed: "
                + "; ".join(changes)
                + ". Start a fresh run without --resume."
            )

    @staticmethod
    def _step(state: Dict[str, Any], step_name: str) -> Dict[str, Any]:
        return state.setdefault("steps", {}).setdefault(
            step_name,
            {"status": "pending", "attempts": 0, "started_at": None, "finished_at": None, "error": None},
        )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
