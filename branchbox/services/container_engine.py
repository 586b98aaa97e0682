import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import docker
from docker.models.containers import Container

from branchbox.core.exceptions import DaemonUnreachableError, ExecutionEngineError

KEEPALIVE_ENTRYPOINT = ["tail", "-f", "/dev/null"]

DAEMON_ERROR_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error while fetching server api version",
    "connection refused",
    "connection aborted",
    "docker.sock",
)


class ContainerBackend(ABC):
    """Operations the snapshot engine needs from a container runtime.

    One backend instance is one session: it is acquired at the start of a
    top-level operation and closed at the end of it.
    """

    @abstractmethod
    def run_container(
        self,
        image: str,
        archive: bytes,
        env: Dict[str, str],
        workdir: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Create a container from ``image``, unpack ``archive`` at / and start it"""

    @abstractmethod
    def entrypoint(self, container: Any) -> List[str]:
        """The entrypoint configured on the container's image"""

    @abstractmethod
    def exec(self, container: Any, argv: List[str], workdir: str) -> Tuple[int, str, str]:
        """Run ``argv`` to completion, returning (exit_code, stdout, stderr)"""

    @abstractmethod
    def get_archive(self, container: Any, path: str) -> Iterable[bytes]:
        """Stream ``path`` out of the container as tar chunks"""

    @abstractmethod
    def remove(self, container: Any) -> None:
        """Kill and remove the container; removing a missing container is not an error"""

    def close(self) -> None:
        pass


class DockerBackend(ContainerBackend):
    """Container backend talking to a Docker daemon through the docker SDK"""

    def __init__(self, client: docker.DockerClient):
        self.client = client
        self.logger = logging.getLogger(__name__)

    def _ensure_image(self, image: str):
        try:
            return self.client.images.get(image)
        except docker.errors.ImageNotFound:
            self.logger.info(f"Pulling image {image}")
            return self.client.images.pull(image)

    def run_container(
        self,
        image: str,
        archive: bytes,
        env: Dict[str, str],
        workdir: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> Container:
        container = None
        try:
            image_obj = self._ensure_image(image)
            container = self.client.containers.create(
                image_obj.id,
                entrypoint=KEEPALIVE_ENTRYPOINT,
                command=[],
                environment=env,
                working_dir=workdir,
                labels=labels or {},
                detach=True,
            )
            if archive:
                container.put_archive("/", archive)
            container.start()
            container.reload()
            self.logger.info(f"Container {container.short_id} status: {container.status}")
            if container.status != "running":
                raise ExecutionEngineError(
                    f"Container for image {image} did not start (status: {container.status})"
                )
            return container
        except docker.errors.DockerException as e:
            if container is not None:
                self.remove(container)
            raise ExecutionEngineError(f"Failed to start container from {image}: {e}") from e
        except ExecutionEngineError:
            if container is not None:
                self.remove(container)
            raise

    def entrypoint(self, container: Container) -> List[str]:
        config = container.image.attrs.get("Config") or {}
        return list(config.get("Entrypoint") or [])

    def exec(self, container: Container, argv: List[str], workdir: str) -> Tuple[int, str, str]:
        try:
            result = container.exec_run(argv, demux=True, workdir=workdir)
        except docker.errors.DockerException as e:
            raise ExecutionEngineError(f"Failed to execute {argv!r}: {e}") from e
        stdout, stderr = result.output if result.output else (None, None)
        return (
            result.exit_code,
            (stdout or b"").decode("utf-8", errors="replace"),
            (stderr or b"").decode("utf-8", errors="replace"),
        )

    def get_archive(self, container: Container, path: str) -> Iterable[bytes]:
        try:
            bits, _ = container.get_archive(path)
        except docker.errors.DockerException as e:
            raise ExecutionEngineError(f"Failed to export {path} from container: {e}") from e
        return bits

    def remove(self, container: Container) -> None:
        try:
            container.remove(force=True)
            self.logger.debug(f"Removed container {container.short_id}")
        except docker.errors.NotFound:
            pass
        except docker.errors.APIError as e:
            self.logger.warning(f"Failed to remove container {container.short_id}: {e}")

    def close(self) -> None:
        self.client.close()


def is_daemon_error(error: BaseException) -> bool:
    """Whether a connection error means the daemon is down rather than misbehaving"""
    if isinstance(error, ConnectionError):
        return True
    if isinstance(error, FileNotFoundError):
        # A missing socket, not a missing certificate or config file
        return error.filename is None or str(error.filename).endswith(".sock")
    text = f"{type(error).__name__}: {error}".lower()
    return any(marker in text for marker in DAEMON_ERROR_MARKERS)


def connect() -> DockerBackend:
    """Connect to the Docker daemon configured in the environment (DOCKER_HOST etc.)

    Raises:
        DaemonUnreachableError: if nothing answers on the daemon socket
        ExecutionEngineError: for any other connection failure
    """
    logger = logging.getLogger(__name__)
    logger.info("Connecting to Docker")
    try:
        client = docker.from_env()
        client.ping()
    except (docker.errors.DockerException, OSError) as e:
        logger.error(f"Error connecting to Docker: {e}")
        if is_daemon_error(e):
            raise DaemonUnreachableError(str(e)) from e
        raise ExecutionEngineError(f"Failed to connect to Docker: {e}") from e
    return DockerBackend(client)


@contextmanager
def session(
    connect_backend: Optional[Callable[[], ContainerBackend]] = None,
) -> Iterator[ContainerBackend]:
    """Scoped engine session, closed on every exit path

    Args:
        connect_backend: Factory for the backend; defaults to ``connect`` (Docker)
    """
    backend = (connect_backend or connect)()
    try:
        yield backend
    finally:
        backend.close()
