from branchbox.core.exceptions import (
    BranchboxError,
    ConcurrentModificationError,
    DaemonUnreachableError,
    EnvironmentBuildError,
    EnvironmentConfigError,
    EnvironmentNotFoundError,
    ExecutionEngineError,
    PersistenceError,
    ReferenceNotFoundError,
    RepositoryNotFoundError,
)
from branchbox.schemas.environment import EnvironmentConfig, EnvironmentState
from branchbox.schemas.execution import ExecutionResult
from branchbox.services.environment import Environment, HandleState
from branchbox.services.lifecycle import (
    check_dirty,
    create,
    delete,
    diff,
    exec_command,
    history,
    list_environments,
    open,
    persist,
    run,
)

__all__ = [
    "BranchboxError",
    "ConcurrentModificationError",
    "DaemonUnreachableError",
    "Environment",
    "EnvironmentBuildError",
    "EnvironmentConfig",
    "EnvironmentConfigError",
    "EnvironmentNotFoundError",
    "EnvironmentState",
    "ExecutionEngineError",
    "ExecutionResult",
    "HandleState",
    "PersistenceError",
    "ReferenceNotFoundError",
    "RepositoryNotFoundError",
    "check_dirty",
    "create",
    "delete",
    "diff",
    "exec_command",
    "history",
    "list_environments",
    "open",
    "persist",
    "run",
]
