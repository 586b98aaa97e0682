"""Bridge between git trees and live containers, in both directions.

``materialize`` turns a tree plus an EnvironmentConfig into a running
container, ``execute`` runs one command in it and ``export_tree`` folds the
container's working directory back into a tree object. Environment creation
and command execution share these three steps.
"""

import logging
import shlex
import tarfile
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, Iterator, List, Optional

from branchbox.core.config import get_settings
from branchbox.core.exceptions import EnvironmentBuildError, ExecutionEngineError
from branchbox.schemas.environment import EnvironmentConfig
from branchbox.schemas.execution import ExecutionResult
from branchbox.services.container_engine import ContainerBackend
from branchbox.services.git_repo_manager import GitRepository

logger = logging.getLogger(__name__)


def tree_from_archive(
    repo: GitRepository,
    base_tree: Optional[str],
    chunks: Iterable[bytes],
    root: str,
) -> str:
    """Convert a tar stream of a filesystem into a git tree.

    Args:
        repo: Repository whose object store receives the blobs and trees
        base_tree: Tree the filesystem started from, or None
        chunks: Tar archive bytes, as streamed by the container engine
        root: Directory inside the archive that holds the tracked files

    Returns:
        The hex sha of the resulting tree. Identical filesystems always give
        the same sha, and only blobs missing from the object store are written.
    """
    with tempfile.TemporaryDirectory(prefix="branchbox-export-", ignore_cleanup_errors=True) as tmp:
        archive_path = Path(tmp) / "export.tar"
        with archive_path.open("wb") as f:
            for chunk in chunks:
                f.write(chunk)

        extract_dir = Path(tmp) / "fs"
        extract_dir.mkdir()
        with tarfile.open(archive_path) as tar:
            tar.extractall(extract_dir, filter="tar")

        source = extract_dir / root if root else extract_dir
        if not source.is_dir():
            # The command removed the working directory itself
            logger.warning(f"'{root}' missing from exported archive, recording an empty tree")
            source.mkdir(parents=True, exist_ok=True)
        return repo.write_tree_from_directory(source, base_tree)


class SnapshotEngine:
    """Materializes trees into containers and exports containers back into trees"""

    def __init__(self, repo: GitRepository, backend: ContainerBackend):
        self.repo = repo
        self.backend = backend
        self.logger = logging.getLogger(__name__)

    def materialize(
        self, tree: str, config: EnvironmentConfig, labels: Optional[Dict[str, str]] = None
    ) -> Any:
        """Start a container of ``config.base_image`` with ``tree`` at ``config.workdir``"""
        self.logger.info(f"Materializing tree {tree[:12]} on {config.base_image}")
        archive = self.repo.archive(tree, prefix=config.workdir)
        return self.backend.run_container(
            config.base_image, archive, dict(config.env), config.workdir, labels
        )

    @contextmanager
    def materialized(
        self, tree: str, config: EnvironmentConfig, labels: Optional[Dict[str, str]] = None
    ) -> Iterator[Any]:
        """Like ``materialize``, but the container is removed when the block exits"""
        container = self.materialize(tree, config, labels)
        try:
            yield container
        finally:
            self.backend.remove(container)

    def _argv(self, container: Any, command: str, shell: str, use_entrypoint: bool) -> List[str]:
        if use_entrypoint:
            return self.backend.entrypoint(container) + shlex.split(command)
        return [shell, "-c", command]

    def execute(
        self,
        container: Any,
        command: str,
        shell: Optional[str] = None,
        use_entrypoint: bool = False,
        timeout: Optional[float] = None,
        workdir: Optional[str] = None,
    ) -> ExecutionResult:
        """Run one command; a nonzero exit code is returned, never raised

        Raises:
            ExecutionEngineError: if the engine fails or ``timeout`` elapses
        """
        settings = get_settings()
        shell = shell or settings.DEFAULT_SHELL
        if timeout is None:
            timeout = settings.EXEC_TIMEOUT
        argv = self._argv(container, command, shell, use_entrypoint)
        self.logger.info(f"Executing {argv!r}")

        started = time.monotonic()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="branchbox-exec")
        try:
            future = pool.submit(self.backend.exec, container, argv, workdir)
            try:
                exit_code, stdout, stderr = future.result(timeout=timeout)
            except FutureTimeoutError as e:
                # Killing the container also unblocks the worker thread
                self.backend.remove(container)
                raise ExecutionEngineError(
                    f"Command '{command}' timed out after {timeout} seconds"
                ) from e
        finally:
            pool.shutdown(wait=False)
        duration = time.monotonic() - started

        self.logger.info(f"Command exited with code {exit_code} after {duration:.2f}s")
        return ExecutionResult(
            command=command,
            shell=shell,
            use_entrypoint=use_entrypoint,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration=duration,
        )

    def export_tree(self, container: Any, base_tree: Optional[str], workdir: str) -> str:
        """Snapshot the container's ``workdir`` into a tree object"""
        chunks = self.backend.get_archive(container, workdir)
        tree = tree_from_archive(self.repo, base_tree, chunks, PurePosixPath(workdir).name)
        self.logger.info(f"Exported {workdir} as tree {tree[:12]}")
        return tree

    def bootstrap(
        self, container: Any, config: EnvironmentConfig, timeout: Optional[float] = None
    ) -> List[ExecutionResult]:
        """Run setup commands, then install commands, stopping at the first failure

        Raises:
            EnvironmentBuildError: if any of them exits nonzero
        """
        results = []
        for phase, commands in (("setup", config.setup_commands), ("install", config.install_commands)):
            for command in commands:
                self.logger.info(f"Running {phase} command: {command}")
                result = self.execute(container, command, timeout=timeout, workdir=config.workdir)
                if not result.success:
                    raise EnvironmentBuildError(command, result.exit_code, result.stdout, result.stderr)
                results.append(result)
        return results
