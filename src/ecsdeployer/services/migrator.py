"""SQL migration discovery and application for ecsdeployer."""

import hashlib
import os
import re
from typing import Callable, Dict, List, Optional

from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from ecsdeployer.constants import DEFAULT_MIGRATIONS_TABLE, MIGRATION_SUFFIX
from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error
from ecsdeployer.models import MigrationScript


class MigrationService:
    """Applies ``*.sql`` files in filename order with ``psql``.

    By default every script is applied on every run. With ``track=True`` a
    bookkeeping table records applied file names and checksums so that only
    new scripts run, and edits to an already-applied script are refused.
    """

    IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
    HOST = "127.0.0.1"

    def __init__(self, logger, console):
        self.logger = logger
        self.console = console

    def discover(self, migrations_dir: str) -> List[MigrationScript]:
        if not os.path.isdir(migrations_dir):
            raise DeployerError(f"Migrations directory not found: {migrations_dir}")

        scripts = []
        for name in sorted(os.listdir(migrations_dir)):
            path = os.path.join(migrations_dir, name)
            if name.startswith(".") or not name.endswith(MIGRATION_SUFFIX) or not os.path.isfile(path):
                continue
            scripts.append(MigrationScript(name=name, path=path, sha256=self._sha256(path)))
        return scripts

    @staticmethod
    def _sha256(path: str) -> str:
        hasher = hashlib.sha256()
        with open(path, "rb") as file_obj:
            for chunk in iter(lambda: file_obj.read(65536), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def psql_command(self, port: int, db_user: str, db_name: str) -> List[str]:
        return [
            "psql",
            "-h",
            self.HOST,
            "-p",
            str(port),
            "-U",
            db_user,
            "-d",
            db_name,
            "-v",
            "ON_ERROR_STOP=1",
            "--no-psqlrc",
        ]

    def _validate_table(self, table: str) -> str:
        if not self.IDENTIFIER_RE.match(table):
            raise DeployerError(f"Invalid migrations table name: {table}")
        return table

    @staticmethod
    def _quote(value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def ensure_tracking_table(self, base_cmd: List[str], table: str, run_cmd: Callable, env: Dict[str, str]):
        table = self._validate_table(table)
        sql = (
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "filename TEXT PRIMARY KEY, "
            "sha256 TEXT NOT NULL, "
            "applied_at TIMESTAMPTZ NOT NULL DEFAULT now())"
        )
        run_cmd(base_cmd + ["-q", "-c", sql], capture_output=True, env=env)

    def applied_checksums(
        self, base_cmd: List[str], table: str, run_cmd: Callable, env: Dict[str, str]
    ) -> Dict[str, str]:
        table = self._validate_table(table)
        result = run_cmd(
            base_cmd + ["-t", "-A", "-F", "|", "-c", f"SELECT filename, sha256 FROM {table} ORDER BY filename"],
            capture_output=True,
            env=env,
        )
        applied = {}
        for line in (result.stdout or "").splitlines():
            if "|" not in line:
                continue
            filename, _, checksum = line.strip().partition("|")
            applied[filename] = checksum
        return applied

    def select_pending(
        self, scripts: List[MigrationScript], applied: Dict[str, str]
    ) -> List[MigrationScript]:
        pending = []
        for script in scripts:
            recorded = applied.get(script.name)
            if recorded is None:
                pending.append(script)
            elif recorded != script.sha256:
                raise DeployerError(actionable_error("migration_checksum_changed", script=script.name))
        return pending

    def _record_sql(self, table: str, script: MigrationScript) -> str:
        return (
            f"INSERT INTO {self._validate_table(table)} (filename, sha256) "
            f"VALUES ({self._quote(script.name)}, {self._quote(script.sha256)})"
        )

    def apply_command(
        self, base_cmd: List[str], script: MigrationScript, track: bool, table: str
    ) -> List[str]:
        if not track:
            return base_cmd + ["-q", "-f", script.path]
        # Script and bookkeeping row commit together or not at all.
        return base_cmd + [
            "-q",
            "--single-transaction",
            "-f",
            script.path,
            "-c",
            self._record_sql(table, script),
        ]

    def apply(
        self,
        scripts: List[MigrationScript],
        port: int,
        db_user: str,
        db_name: str,
        db_password: Optional[str],
        run_cmd: Callable,
        track: bool = False,
        table: str = DEFAULT_MIGRATIONS_TABLE,
        on_applied: Optional[Callable[[MigrationScript], None]] = None,
    ) -> List[str]:
        if not scripts:
            self.logger.warning("No migration scripts found; nothing to apply.")
            self.console.print("[yellow]No migration scripts found.[/yellow]")
            return []

        env = {"PGPASSWORD": db_password} if db_password else {}
        base_cmd = self.psql_command(port, db_user, db_name)

        pending = scripts
        if track:
            self.ensure_tracking_table(base_cmd, table, run_cmd, env)
            pending = self.select_pending(scripts, self.applied_checksums(base_cmd, table, run_cmd, env))
            skipped = len(scripts) - len(pending)
            if skipped:
                self.logger.info("Skipping %s already applied migration(s).", skipped)

        if not pending:
            self.console.print("[green]Schema is up to date.[/green]")
            return []

        applied_names = []
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=self.console,
        ) as progress:
            task = progress.add_task("[cyan]Applying migrations", total=len(pending))
            for script in pending:
                progress.update(task, description=f"[cyan]{script.name}")
                self.logger.info("Applying migration %s", script.name)
                try:
                    run_cmd(self.apply_command(base_cmd, script, track, table), capture_output=True, env=env)
                except DeployerError as exc:
                    raise DeployerError(
                        f"{actionable_error('migration_failed', script=script.name)}\n{exc}"
                    ) from exc
                applied_names.append(script.name)
                if on_applied:
                    on_applied(script)
                progress.advance(task)

        self.console.print(f"[green]Applied {len(applied_names)} migration(s).[/green]")
        return applied_names
