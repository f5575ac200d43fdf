"""Repository clone tool."""

import asyncio
import shutil
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from deckhand.config import Config, get_config
from deckhand.executor import CommandExecutor
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolName, ToolResult

log = get_logger(__name__)


class CloneArgs(BaseModel):
    repo_url: str = Field(
        description="The URL of the repository to clone (e.g., https://github.com/username/repo.git)",
    )
    branch: str | None = Field(default=None, description="Optional branch name to check out")


def repo_dir_name(repo_url: str) -> str:
    """Derive the staging directory name from the URL's last path segment."""
    raw = str(repo_url or "").strip().rstrip("/")
    path = urlparse(raw).path if "://" in raw else raw.split(":", 1)[-1]
    last = path.rsplit("/", 1)[-1]
    if last.endswith(".git"):
        last = last[: -len(".git")]
    if not last or last in {".", ".."}:
        return "repo"
    return last


class GitCloneTool(Tool):
    """Clone a git repository into the staging root."""

    name = ToolName.GITHUB_CLONE.value
    args_model = CloneArgs

    def __init__(self, executor: CommandExecutor | None = None, config: Config | None = None):
        self.config = config or get_config()
        self.executor = executor or CommandExecutor()
        self.staging_dir = self.config.tools.clone.staging_dir
        self.timeout_seconds = float(self.config.tools.clone.timeout)
        self.description = (
            f"Clone a git repository into the '{self.staging_dir}' staging directory. "
            "Fails if a repository with the same name was already cloned there."
        )

    def staging_root(self, base: Path | None) -> Path:
        root = Path(self.staging_dir).expanduser()
        if not root.is_absolute() and base is not None:
            root = base / root
        return root

    async def execute(self, repo_url: str, branch: str | None = None, **kwargs: Any) -> ToolResult:
        url = str(repo_url or "").strip()
        if not url or url.startswith("-"):
            return ToolResult.fail("A repository URL is required", kind="validation")
        if branch is not None and (not branch.strip() or branch.startswith("-")):
            return ToolResult.fail(f"Invalid branch name: {branch!r}", kind="validation")

        base = kwargs.get("_runtime_base_path")
        root = self.staging_root(Path(base) if base else None)
        repo_path = root / repo_dir_name(url)
        shown = Path(self.staging_dir) / repo_path.name

        try:
            root.mkdir(parents=True, exist_ok=True)
            # Reserving the directory is the conflict check.
            repo_path.mkdir()
        except FileExistsError:
            return ToolResult.fail(
                f"Repository already exists at {shown}. "
                "Please use a different name or remove the existing directory."
            )
        except OSError as e:
            return ToolResult.fail(f"Failed to prepare {shown}: {e}")

        argv = ["git", "clone"]
        if branch:
            argv += ["--branch", branch]
        argv += ["--", url, str(repo_path)]

        try:
            result = await self.executor.run(
                argv,
                timeout=self.timeout_seconds,
                abort_event=kwargs.get("_abort_event"),
            )
        except asyncio.CancelledError:
            shutil.rmtree(repo_path, ignore_errors=True)
            raise
        if not result.ok:
            shutil.rmtree(repo_path, ignore_errors=True)
            log.warning("Clone failed", repo_url=url, error=result.describe_failure())
            kind = "timeout" if result.timed_out else "execution"
            return ToolResult.fail(f"Failed to clone repository: {result.describe_failure()}", kind=kind)

        if branch:
            return ToolResult(content=f"Successfully cloned repository {url} (branch: {branch}) to {shown}")
        return ToolResult(content=f"Successfully cloned repository {url} to {shown}")
