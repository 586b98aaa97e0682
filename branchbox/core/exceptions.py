"""Error taxonomy for environment operations"""

import sys
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from branchbox.schemas.execution import ExecutionResult


class BranchboxError(Exception):
    """Base class for every error raised by branchbox"""


class RepositoryNotFoundError(BranchboxError, LookupError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Not a git repository (or any parent): {path}")


class ReferenceNotFoundError(BranchboxError, LookupError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Git reference '{ref}' does not resolve to a commit")


class EnvironmentNotFoundError(BranchboxError, LookupError):
    def __init__(self, env_id: str):
        self.env_id = env_id
        super().__init__(f"Environment '{env_id}' not found")


class EnvironmentBuildError(BranchboxError):
    """A setup or install command exited nonzero while creating an environment"""

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        message = f"Command '{command}' failed with exit code {exit_code}"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)


class EnvironmentConfigError(BranchboxError):
    """The repository's environment config file is not valid"""

    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Invalid environment config in {path}: {detail}")


class ExecutionEngineError(BranchboxError):
    """The container engine itself failed (not a command's nonzero exit)"""


class DaemonUnreachableError(ExecutionEngineError):
    """The container engine daemon refused or never answered the connection"""

    def __init__(self, detail: str = ""):
        self.detail = detail
        self.remediation = daemon_remediation()
        message = "Cannot connect to the Docker daemon."
        if detail:
            message += f" ({detail})"
        super().__init__(f"{message}\n{self.remediation}")


class ConcurrentModificationError(BranchboxError):
    """The environment branch moved between loading and persisting"""

    def __init__(self, env_id: str, expected: str, actual: Optional[str]):
        self.env_id = env_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Environment '{env_id}' was modified concurrently: expected head "
            f"{expected[:12]}, found {actual[:12] if actual else 'nothing'}. "
            "Open the environment again and retry."
        )


class PersistenceError(BranchboxError):
    """A command ran but its filesystem changes could not be committed"""

    def __init__(self, env_id: str, result: "ExecutionResult"):
        self.env_id = env_id
        self.result = result
        super().__init__(
            f"Command ran in environment '{env_id}' (exit code {result.exit_code}) "
            "but its changes were NOT persisted"
        )


def daemon_remediation() -> str:
    if sys.platform == "darwin":
        return "Start Docker Desktop (open -a Docker) and try again."
    if sys.platform.startswith("win"):
        return "Start Docker Desktop from the Start menu and try again."
    return (
        "Start the Docker daemon (e.g. 'sudo systemctl start docker') and try again. "
        "If Docker runs rootless, check that DOCKER_HOST points at its socket."
    )
