import io
import os
import shutil
import subprocess
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

import pytest

from branchbox.schemas.environment import EnvironmentConfig
from branchbox.services.container_engine import ContainerBackend
from branchbox.services.git_repo_manager import GitRepository
from branchbox.services.registry import EnvironmentRegistry
from branchbox.services.snapshot import SnapshotEngine


def pytest_configure(config):
    """Register the 'integration' marker"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test that uses real external services",
    )


class LocalContainer:
    """A 'container' that is just a directory on the host"""

    def __init__(self, root: Path, image: str, env: Dict[str, str], workdir: str, labels: Dict[str, str]):
        self.root = root
        self.image = image
        self.env = env
        self.workdir = workdir
        self.labels = labels
        self.removed = False


class LocalBackend(ContainerBackend):
    """Runs commands with subprocess inside a per-container scratch directory"""

    def __init__(self, base_dir: Path, image_entrypoint: Optional[List[str]] = None):
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.image_entrypoint = image_entrypoint or []
        self.containers: List[LocalContainer] = []
        self.closed = False

    def run_container(self, image, archive, env, workdir, labels=None):
        root = Path(tempfile.mkdtemp(dir=self.base_dir))
        if archive:
            with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
                tar.extractall(root, filter="tar")
        (root / workdir.lstrip("/")).mkdir(parents=True, exist_ok=True)
        container = LocalContainer(root, image, dict(env), workdir, labels or {})
        self.containers.append(container)
        return container

    def entrypoint(self, container):
        return list(self.image_entrypoint)

    def exec(self, container, argv, workdir):
        cwd = container.root / (workdir or container.workdir).lstrip("/")
        proc = subprocess.run(
            argv,
            cwd=cwd,
            env={**os.environ, **container.env},
            capture_output=True,
            text=True,
        )
        return proc.returncode, proc.stdout, proc.stderr

    def get_archive(self, container, path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            tar.add(container.root / path.lstrip("/"), arcname=PurePosixPath(path).name)
        return [buffer.getvalue()]

    def remove(self, container):
        container.removed = True
        shutil.rmtree(container.root, ignore_errors=True)

    def close(self):
        self.closed = True


@pytest.fixture
def test_repo(tmp_path):
    """Create a test git repository"""
    from git import Repo

    repo_dir = tmp_path / "test-repo"
    repo_dir.mkdir()

    # Initialize git repo
    repo = Repo.init(repo_dir)

    # Create a test file
    test_file = repo_dir / "test.txt"
    test_file.write_text("Hello world! This is a test file.")

    # Commit the file
    repo.index.add(["test.txt"])
    repo.index.commit("Initial commit")

    return repo_dir


@pytest.fixture
def repository(test_repo):
    return GitRepository.open(test_repo)


@pytest.fixture
def backend(tmp_path):
    return LocalBackend(tmp_path / "containers")


@pytest.fixture
def engine(repository, backend):
    return SnapshotEngine(repository, backend)


@pytest.fixture
def registry(repository):
    return EnvironmentRegistry(repository)


@pytest.fixture
def config():
    return EnvironmentConfig(base_image="local/test:latest", workdir="/workdir")


@pytest.fixture
def tree_file(repository):
    """Read a file from a tree sha, or None if it is absent"""
    def _read(tree: str, path: str) -> Optional[str]:
        try:
            blob = repository.repo.tree(tree) / path
        except KeyError:
            return None
        return blob.data_stream.read().decode("utf-8")

    return _read
