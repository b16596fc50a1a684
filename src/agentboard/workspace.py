from __future__ import annotations

import logging
import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Literal

from agentboard.progress import ProgressStore

logger = logging.getLogger(__name__)

REQUIREMENTS_FILE = "requirements.md"
CHANGE_REQUEST_FILE = "change-request.md"
WORKTREE_DIR = "worktree"
SLUG_MAX_LENGTH = 50
INSTANCE_NAME_PATTERN = re.compile(r"^(?P<slug>.*)-(?P<timestamp>\d{4}-\d{2}-\d{2}T[\d-]+Z)$")

WorkspaceStrategy = Literal["worktree", "direct"]


class WorkspaceError(RuntimeError):
    """Raised when a version-control operation on the workspace fails."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _format_timestamp(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond:06d}Z"


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower())[:SLUG_MAX_LENGTH].strip("-")
    return slug or "task"


@dataclass(slots=True)
class ExecutionInstance:
    instance_path: Path
    slug: str
    timestamp: str

    @property
    def name(self) -> str:
        return self.instance_path.name

    @property
    def requirements_file(self) -> Path:
        return self.instance_path / REQUIREMENTS_FILE

    @property
    def change_request_file(self) -> Path:
        return self.instance_path / CHANGE_REQUEST_FILE

    @property
    def worktree_path(self) -> Path:
        return self.instance_path / WORKTREE_DIR


@dataclass(slots=True)
class WorkspaceResult:
    work_dir: Path
    branch_name: str
    strategy: WorkspaceStrategy

    @property
    def isolated(self) -> bool:
        return self.strategy == "worktree"


class WorkspaceManager:
    def __init__(
        self,
        instances_root: Path,
        progress: ProgressStore,
        *,
        branch_prefix: str = "agent/",
        base_branch: str = "main",
        git_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.instances_root = Path(instances_root)
        self.progress = progress
        self.branch_prefix = branch_prefix
        self.base_branch = base_branch
        self.git_timeout_seconds = git_timeout_seconds
        self._clock = clock

    def _run_git(self, args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=cwd,
                text=True,
                capture_output=True,
                timeout=self.git_timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise WorkspaceError(f"git {args[0]} timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise WorkspaceError(f"git unavailable: {exc}") from exc
        if proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_git_repo(self, path: Path) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], cwd=path)
        except WorkspaceError:
            return False
        return proc.stdout.strip() == "true"

    def branch_name_for(self, instance: ExecutionInstance) -> str:
        return f"{self.branch_prefix}{instance.name}"

    def create_instance(self, title: str, requirements: str) -> ExecutionInstance:
        """Allocate a fresh instance directory and seed its requirements and progress.

        The timestamp component is advanced by a microsecond until the directory
        name is unused, so identical titles created at the same instant still get
        distinct instances. Filesystem errors propagate to the caller.
        """
        slug = slugify(title)
        self.instances_root.mkdir(parents=True, exist_ok=True)
        moment = self._clock()
        while True:
            timestamp = _format_timestamp(moment)
            instance_path = self.instances_root / f"{slug}-{timestamp}"
            try:
                instance_path.mkdir(parents=False, exist_ok=False)
                break
            except FileExistsError:
                moment += timedelta(microseconds=1)

        instance = ExecutionInstance(instance_path=instance_path, slug=slug, timestamp=timestamp)
        instance.requirements_file.write_text(requirements, encoding="utf-8")
        self.progress.initialize(instance_path, instance.name)
        logger.info("Created agent instance %s", instance_path)
        return instance

    def create_isolated_workspace(
        self, instance: ExecutionInstance, codebase_root: Path
    ) -> WorkspaceResult:
        """Prefer a linked worktree on a dedicated branch; fall back to the codebase root."""
        codebase_root = Path(codebase_root)
        branch_name = self.branch_name_for(instance)
        try:
            if not self.is_git_repo(codebase_root):
                raise WorkspaceError(f"{codebase_root} is not a git repository")
            self._run_git(
                ["worktree", "add", str(instance.worktree_path), "-b", branch_name],
                cwd=codebase_root,
            )
        except (WorkspaceError, OSError) as exc:
            logger.warning("Worktree isolation unavailable for %s: %s", instance.name, exc)
            self.progress.append_log(
                instance.instance_path,
                f"Note: Could not create worktree ({exc}), working directly in {codebase_root}",
            )
            return WorkspaceResult(work_dir=codebase_root, branch_name="", strategy="direct")

        self.progress.append_log(instance.instance_path, f"Created git worktree: {branch_name}")
        return WorkspaceResult(
            work_dir=instance.worktree_path, branch_name=branch_name, strategy="worktree"
        )

    def open_instance(
        self, instance_path: Path, codebase_root: Path
    ) -> tuple[ExecutionInstance, WorkspaceResult]:
        """Rebuild an existing instance and its workspace for a follow-up run."""
        instance_path = Path(instance_path)
        if not instance_path.is_dir():
            raise WorkspaceError(f"Instance directory not found: {instance_path}")
        match = INSTANCE_NAME_PATTERN.match(instance_path.name)
        if match:
            slug, timestamp = match.group("slug"), match.group("timestamp")
        else:
            slug, timestamp = instance_path.name, ""
        instance = ExecutionInstance(instance_path=instance_path, slug=slug, timestamp=timestamp)

        if instance.worktree_path.is_dir():
            try:
                branch_name = self._run_git(
                    ["rev-parse", "--abbrev-ref", "HEAD"], cwd=instance.worktree_path
                ).stdout.strip()
            except WorkspaceError:
                branch_name = ""
            return instance, WorkspaceResult(
                work_dir=instance.worktree_path, branch_name=branch_name, strategy="worktree"
            )
        return instance, WorkspaceResult(
            work_dir=Path(codebase_root), branch_name="", strategy="direct"
        )

    def merge_branch(self, codebase_root: Path, branch_name: str) -> None:
        codebase_root = Path(codebase_root)
        self._run_git(["checkout", self.base_branch], cwd=codebase_root)
        self._run_git(["merge", branch_name, "--no-edit"], cwd=codebase_root)
        logger.info("Merged %s into %s in %s", branch_name, self.base_branch, codebase_root)

    def delete_branch(self, codebase_root: Path, branch_name: str) -> None:
        self._run_git(["branch", "-D", branch_name], cwd=Path(codebase_root))

    def cleanup(self, instance_path: Path, codebase_root: Path) -> None:
        """Best-effort removal of the worktree and instance directory. Never raises."""
        instance_path = Path(instance_path)
        worktree_path = instance_path / WORKTREE_DIR
        if worktree_path.exists():
            try:
                self._run_git(
                    ["worktree", "remove", str(worktree_path), "--force"], cwd=Path(codebase_root)
                )
            except (WorkspaceError, OSError) as exc:
                logger.warning("Failed to remove worktree %s: %s", worktree_path, exc)
        try:
            shutil.rmtree(instance_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove agent instance %s: %s", instance_path, exc)
