import logging
from enum import Enum
from typing import Any, Dict, Optional

from git import Commit
from pydantic import ValidationError

from branchbox.schemas.environment import EnvironmentConfig, EnvironmentState
from branchbox.schemas.execution import ExecutionResult
from branchbox.services.git_repo_manager import GitRepository
from branchbox.services.snapshot import SnapshotEngine

STATE_TRAILER = "Branchbox-State: "
SUBJECT_MAX_LENGTH = 72


class HandleState(str, Enum):
    LOADED = "loaded"
    RUNNING = "running"
    EXECUTED = "executed"
    PERSISTED = "persisted"
    DISCARDED = "discarded"


def format_commit_message(subject: str, state: EnvironmentState, body: str = "") -> str:
    """Build a commit message whose last line carries the serialized state"""
    parts = [subject.strip()]
    if body.strip():
        parts.append(body.strip())
    parts.append(STATE_TRAILER + state.model_dump_json())
    return "\n\n".join(parts) + "\n"


def parse_state(message: str) -> Optional[EnvironmentState]:
    """Read the state trailer back from a commit message, if it has one"""
    for line in reversed(message.splitlines()):
        if line.startswith(STATE_TRAILER):
            try:
                return EnvironmentState.model_validate_json(line[len(STATE_TRAILER):])
            except ValidationError:
                return None
    return None


def default_message(result: Optional[ExecutionResult]) -> str:
    """Commit subject used when no note is given: the command and its exit code"""
    if result is None:
        return "Update environment"
    command = result.command.strip().splitlines()[0] if result.command.strip() else ""
    if len(command) > SUBJECT_MAX_LENGTH:
        command = command[: SUBJECT_MAX_LENGTH - 3] + "..."
    return f"Run `{command}` (exit code {result.exit_code})"


class Environment:
    """Per-invocation view of one environment.

    ``run`` advances ``head_tree`` in memory only; writing it to the branch is
    the registry's job (``EnvironmentRegistry.update``). A handle must not
    outlive the process that opened it, and callers must not start two runs on
    the same handle at once.
    """

    def __init__(
        self,
        env_id: str,
        branch: str,
        state: EnvironmentState,
        head_commit: Commit,
        repository: Optional[GitRepository] = None,
    ):
        self.id = env_id
        self.repository = repository
        self.branch = branch
        self.state = state
        self.head_commit = head_commit
        self.head_tree: str = head_commit.tree.hexsha
        self.last_result: Optional[ExecutionResult] = None
        self.handle_state = HandleState.LOADED
        self.logger = logging.getLogger(__name__)

    @property
    def refname(self) -> str:
        return f"refs/heads/{self.branch}"

    @property
    def config(self) -> EnvironmentConfig:
        return self.state.config

    @property
    def has_changes(self) -> bool:
        """Whether ``head_tree`` moved past the loaded commit"""
        return self.head_tree != self.head_commit.tree.hexsha

    @property
    def needs_persist(self) -> bool:
        """A run happened since the last commit, or the tree moved"""
        return self.handle_state == HandleState.EXECUTED or self.has_changes

    @property
    def labels(self) -> Dict[str, str]:
        return {"branchbox.environment": self.id}

    def run(
        self,
        engine: SnapshotEngine,
        command: str,
        shell: Optional[str] = None,
        use_entrypoint: bool = False,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """Execute a command against the current head tree.

        The exported tree becomes the new ``head_tree`` whatever the exit code,
        so a failing command's side effects are kept. If the engine fails or the
        call is interrupted, the container is removed and the handle is left as
        it was.
        """
        if self.handle_state == HandleState.RUNNING:
            raise ValueError(f"Environment {self.id} already has a command in flight")
        if self.handle_state == HandleState.DISCARDED:
            raise ValueError(f"Environment {self.id} was discarded; open it again")

        previous = self.handle_state
        self.handle_state = HandleState.RUNNING
        try:
            with engine.materialized(self.head_tree, self.config, labels=self.labels) as container:
                result = engine.execute(
                    container,
                    command,
                    shell=shell,
                    use_entrypoint=use_entrypoint,
                    timeout=timeout,
                    workdir=self.config.workdir,
                )
                tree = engine.export_tree(container, self.head_tree, self.config.workdir)
        except BaseException:
            self.handle_state = previous
            raise

        self.head_tree = tree
        self.last_result = result
        self.handle_state = HandleState.EXECUTED
        self.logger.debug(f"Environment {self.id} head tree is now {tree}")
        return result

    def discard(self) -> None:
        """Drop unpersisted changes and retire the handle"""
        self.head_tree = self.head_commit.tree.hexsha
        self.last_result = None
        self.handle_state = HandleState.DISCARDED

    def mark_persisted(self, commit: Optional[Commit] = None, state: Optional[EnvironmentState] = None) -> None:
        if commit is not None:
            self.head_commit = commit
            self.head_tree = commit.tree.hexsha
        if state is not None:
            self.state = state
        self.handle_state = HandleState.PERSISTED

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation for the presentation layer"""
        return {
            "id": self.id,
            "title": self.state.title,
            "description": self.state.description,
            "branch": self.branch,
            "head_commit": self.head_commit.hexsha,
            "head_tree": self.head_tree,
            "from_ref": self.state.from_ref,
            "created_at": self.state.created_at.isoformat(),
            "updated_at": self.state.updated_at.isoformat(),
            "config": self.config.model_dump(),
        }

    def __repr__(self) -> str:
        return f"<Environment {self.id} {self.handle_state.value} head={self.head_commit.hexsha[:12]}>"
