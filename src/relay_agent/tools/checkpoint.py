"""
Checkpoints for file-mutating tool calls.

Before a restorable tool runs, the project files are snapshotted into a
shadow git repository (kept outside the project's own .git) and a JSON
record is written that holds the conversation, the pending tool call and the
snapshot's commit hash. Restoring a checkpoint rolls the files back and
hands the saved conversation to the caller.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import structlog

from ..errors import CheckpointError
from ..llm.base import Message
from .base import ToolCallRequest

logger = structlog.get_logger()


class SnapshotService(Protocol):
    """Versioning collaborator that can snapshot and restore project files."""

    async def snapshot(self, message: str) -> str:
        """Record the current file state; returns a content-addressed id."""
        ...

    async def restore(self, commit_hash: str) -> None:
        ...


class GitSnapshotService:
    """Snapshots a project directory into a shadow git repository."""

    def __init__(
        self,
        project_root: Path | str,
        history_dir: Path | str,
        exclude: tuple[str, ...] = (".git/", ".relay/"),
    ):
        self.project_root = Path(project_root).resolve()
        self.history_dir = Path(history_dir).resolve()
        self.exclude = exclude
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def git_dir(self) -> Path:
        return self.history_dir / ".git"

    async def _git(self, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            "git",
            f"--git-dir={self.git_dir}",
            f"--work-tree={self.project_root}",
            *args,
            cwd=self.project_root,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise CheckpointError(
                f"git {args[0]} failed ({process.returncode}): {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace").strip()

    async def initialize(self) -> None:
        if self._initialized:
            return
        if not self.git_dir.exists():
            self.history_dir.mkdir(parents=True, exist_ok=True)
            await self._git("init", "--quiet")
            await self._git("config", "user.name", "relay-agent")
            await self._git("config", "user.email", "relay-agent@localhost")
            await self._git("config", "commit.gpgsign", "false")
            exclude_file = self.git_dir / "info" / "exclude"
            exclude_file.parent.mkdir(parents=True, exist_ok=True)
            exclude_file.write_text("\n".join(self.exclude) + "\n", encoding="utf-8")
            await self._git("commit", "--quiet", "--allow-empty", "-m", "Initial commit")
            logger.info("Shadow repository created", path=str(self.history_dir))
        self._initialized = True

    async def snapshot(self, message: str) -> str:
        async with self._lock:
            await self.initialize()
            await self._git("add", "--all")
            await self._git("commit", "--quiet", "--allow-empty", "-m", message)
            return await self._git("rev-parse", "HEAD")

    async def restore(self, commit_hash: str) -> None:
        async with self._lock:
            await self.initialize()
            await self._git("restore", f"--source={commit_hash}", ".")
            await self._git("clean", "-f", "-d")


@dataclass
class CheckpointRecord:
    """One restorable tool call, as persisted on disk."""

    history: list[dict[str, Any]]
    tool_call: dict[str, Any]
    commit_hash: str | None
    file_path: str | None
    client_history: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "history": self.history,
            "clientHistory": self.client_history,
            "toolCall": self.tool_call,
            "commitHash": self.commit_hash,
            "filePath": self.file_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckpointRecord":
        return cls(
            history=list(data.get("history", [])),
            client_history=list(data.get("clientHistory", [])),
            tool_call=dict(data.get("toolCall", {})),
            commit_hash=data.get("commitHash"),
            file_path=data.get("filePath"),
        )

    @property
    def messages(self) -> list[Message]:
        return [Message.from_dict(m) for m in self.history]


def checkpoint_file_name(tool_name: str, file_path: str | None, now: datetime | None = None) -> str:
    timestamp = (now or datetime.now(timezone.utc)).isoformat().replace(":", "-")
    basename = Path(file_path).name if file_path else "workspace"
    return f"{timestamp}-{basename}-{tool_name}.json"


class CheckpointManager:
    """Writes, lists and restores checkpoint files."""

    def __init__(self, checkpoint_dir: Path | str, snapshots: SnapshotService):
        self.checkpoint_dir = Path(checkpoint_dir)
        self.snapshots = snapshots

    async def create(
        self,
        request: ToolCallRequest,
        file_path: str | None,
        history: list[Message],
        client_history: list[dict[str, Any]] | None = None,
    ) -> Path:
        """Snapshot files and persist a checkpoint for a pending tool call."""
        commit_hash = await self.snapshots.snapshot(f"Snapshot for {request.name}")

        record = CheckpointRecord(
            history=[m.to_dict() for m in history],
            client_history=list(client_history or []),
            tool_call={"name": request.name, "args": request.args},
            commit_hash=commit_hash,
            file_path=file_path,
        )

        path = self.checkpoint_dir / checkpoint_file_name(request.name, file_path)
        try:
            self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(record.to_dict(), indent=2, default=str), encoding="utf-8")
        except OSError as e:
            raise CheckpointError(f"Could not write checkpoint {path}: {e}") from e

        logger.info("Checkpoint created", path=str(path), tool=request.name, commit=commit_hash)
        return path

    def list_checkpoints(self) -> list[Path]:
        if not self.checkpoint_dir.exists():
            return []
        return sorted(self.checkpoint_dir.glob("*.json"))

    def load(self, path: Path | str) -> CheckpointRecord:
        path = Path(path)
        if not path.is_absolute() and not path.exists():
            path = self.checkpoint_dir / path
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Could not read checkpoint {path}: {e}") from e
        return CheckpointRecord.from_dict(data)

    async def restore(self, path: Path | str) -> CheckpointRecord:
        """Roll files back to the checkpoint's snapshot."""
        record = self.load(path)
        if record.commit_hash:
            await self.snapshots.restore(record.commit_hash)
        logger.info("Checkpoint restored", path=str(path), commit=record.commit_hash)
        return record
