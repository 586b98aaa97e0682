"""Entry points for presentation layers.

Each function is one top-level operation: it opens the repository, acquires
a container engine session only when it needs one and releases it before
returning. Environment handles returned here belong to the calling process
and must be reopened by id in the next invocation.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import ExitStack
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from git import Commit

from branchbox.core.exceptions import PersistenceError
from branchbox.schemas.environment import EnvironmentConfig
from branchbox.schemas.execution import ExecutionResult
from branchbox.services.container_engine import ContainerBackend, connect, session
from branchbox.services.environment import Environment
from branchbox.services.git_repo_manager import GitRepository
from branchbox.services.registry import EnvironmentRegistry
from branchbox.services.snapshot import SnapshotEngine

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
BackendFactory = Callable[[], ContainerBackend]


def _registry_for(environment: Environment) -> EnvironmentRegistry:
    if environment.repository is None:
        raise ValueError(f"Environment {environment.id} is not bound to a repository")
    return EnvironmentRegistry(environment.repository)


def create(
    title: str,
    description: str = "",
    from_ref: str = "HEAD",
    config: Optional[EnvironmentConfig] = None,
    path: PathLike = ".",
    timeout: Optional[float] = None,
    connect_backend: Optional[BackendFactory] = None,
) -> Environment:
    """Create an environment from ``from_ref`` (default: the repository HEAD).

    Connecting to the container engine and resolving the reference happen in
    parallel; a bad reference is reported before an unreachable engine.

    Raises:
        ReferenceNotFoundError, EnvironmentBuildError, DaemonUnreachableError,
        ExecutionEngineError
    """
    repository = GitRepository.open(path)
    from_ref = from_ref or "HEAD"
    logger.info(f"Creating environment '{title}' from {from_ref}")

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="branchbox-create") as pool:
        connecting = pool.submit(connect_backend or connect)
        resolving = pool.submit(repository.resolve, from_ref)
        wait((connecting, resolving))

    with ExitStack() as stack:
        if connecting.exception() is None:
            stack.callback(connecting.result().close)
        base = resolving.result()
        backend = connecting.result()
        engine = SnapshotEngine(repository, backend)
        return EnvironmentRegistry(repository).create(
            engine,
            title,
            description=description,
            from_ref=from_ref,
            config=config,
            timeout=timeout,
            base=base,
        )


def open(env_id: str, path: PathLike = ".") -> Environment:
    """Load an existing environment by id

    Raises:
        EnvironmentNotFoundError: if there is no such environment
    """
    return EnvironmentRegistry(GitRepository.open(path)).get(env_id)


def run(
    environment: Environment,
    command: str,
    shell: Optional[str] = None,
    use_entrypoint: bool = False,
    timeout: Optional[float] = None,
    connect_backend: Optional[BackendFactory] = None,
) -> ExecutionResult:
    """Run a command in the environment without persisting anything

    Raises:
        ExecutionEngineError: if the engine fails; a nonzero exit is not an error
    """
    if environment.repository is None:
        raise ValueError(f"Environment {environment.id} is not bound to a repository")
    with session(connect_backend) as backend:
        engine = SnapshotEngine(environment.repository, backend)
        return environment.run(
            engine, command, shell=shell, use_entrypoint=use_entrypoint, timeout=timeout
        )


def persist(environment: Environment, note: str = "") -> Optional[Commit]:
    """Commit the environment's current tree to its branch

    Returns the new commit, or None when there was nothing to persist.

    Raises:
        ConcurrentModificationError: if another writer advanced the branch first
    """
    return _registry_for(environment).update(environment, note)


def check_dirty(path: PathLike = ".") -> Tuple[bool, str]:
    """Whether the host working tree has uncommitted changes (not part of new environments)"""
    return EnvironmentRegistry(GitRepository.open(path)).is_dirty()


def exec_command(
    env_id: str,
    command: str,
    shell: Optional[str] = None,
    use_entrypoint: bool = False,
    timeout: Optional[float] = None,
    note: str = "",
    path: PathLike = ".",
    connect_backend: Optional[BackendFactory] = None,
) -> Tuple[Environment, ExecutionResult, Optional[Commit]]:
    """Open an environment, run one command in it and persist the result.

    Raises:
        PersistenceError: if the command ran but its changes could not be
            committed, including when persisting was interrupted; the error
            carries the ExecutionResult and the underlying cause
    """
    environment = open(env_id, path=path)
    result = run(
        environment,
        command,
        shell=shell,
        use_entrypoint=use_entrypoint,
        timeout=timeout,
        connect_backend=connect_backend,
    )
    try:
        commit = persist(environment, note)
    except BaseException as e:
        # Interrupts included: the caller still needs the result of a command that ran
        logger.error(f"Failed to persist environment {env_id}: {e!r}")
        raise PersistenceError(env_id, result) from e
    return environment, result, commit


def list_environments(path: PathLike = ".") -> List[Environment]:
    return EnvironmentRegistry(GitRepository.open(path)).list_environments()


def delete(env_id: str, path: PathLike = ".") -> None:
    EnvironmentRegistry(GitRepository.open(path)).delete(env_id)


def history(env_id: str, limit: Optional[int] = None, path: PathLike = ".") -> List[Commit]:
    return EnvironmentRegistry(GitRepository.open(path)).history(env_id, limit=limit)


def diff(env_id: str, path: PathLike = ".") -> str:
    return EnvironmentRegistry(GitRepository.open(path)).diff(env_id)
