import json
import logging
import random
import threading
import weakref
from typing import List, Optional, Tuple

from git import Commit
from pydantic import ValidationError

from branchbox.core.config import get_settings
from branchbox.core.exceptions import (
    BranchboxError,
    ConcurrentModificationError,
    EnvironmentConfigError,
    EnvironmentNotFoundError,
)
from branchbox.schemas.environment import EnvironmentConfig, EnvironmentState, utcnow
from branchbox.services.environment import (
    Environment,
    HandleState,
    default_message,
    format_commit_message,
    parse_state,
)
from branchbox.services.git_repo_manager import GitRepository
from branchbox.services.snapshot import SnapshotEngine

ADJECTIVES = [
    "adaptive", "agile", "amber", "brave", "brisk", "calm", "clever", "cosmic",
    "crisp", "daring", "eager", "fluent", "gentle", "golden", "happy", "humble",
    "keen", "lively", "lucid", "mellow", "nimble", "noble", "patient", "quiet",
    "rapid", "steady", "sunny", "swift", "tidy", "vivid", "witty", "zesty",
]

ANIMALS = [
    "badger", "beaver", "bison", "condor", "coyote", "crane", "dingo", "falcon",
    "ferret", "gecko", "heron", "ibis", "jackal", "koala", "lemur", "lynx",
    "marmot", "moose", "newt", "ocelot", "otter", "panda", "puffin", "quokka",
    "raven", "salmon", "tapir", "toucan", "walrus", "wombat", "yak", "zebra",
]

MAX_ID_ATTEMPTS = 32


def generate_environment_id(rng=random) -> str:
    """Human-memorable id such as ``adaptive-koala``"""
    return f"{rng.choice(ADJECTIVES)}-{rng.choice(ANIMALS)}"


class EnvironmentRegistry:
    """Maps environment ids to branches and owns every write to those branches.

    Branches live at ``refs/heads/<prefix>/<id>``; every commit on them carries
    the environment state in its message. Deleted ids keep a tombstone ref at
    ``refs/<prefix>-tombstones/<id>`` so they are never handed out again.
    """

    # Entries disappear once no thread holds or waits on the lock
    _locks = weakref.WeakValueDictionary()
    _locks_guard = threading.Lock()

    def __init__(self, repo: GitRepository, prefix: Optional[str] = None):
        self.repo = repo
        self.prefix = prefix or get_settings().BRANCH_PREFIX
        self.logger = logging.getLogger(__name__)

    def branch_name(self, env_id: str) -> str:
        return f"{self.prefix}/{env_id}"

    def refname(self, env_id: str) -> str:
        return f"refs/heads/{self.branch_name(env_id)}"

    def tombstone_refname(self, env_id: str) -> str:
        return f"refs/{self.prefix}-tombstones/{env_id}"

    def _lock(self, env_id: str) -> threading.Lock:
        key = (self.repo.repo.git_dir, env_id)
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _id_taken(self, env_id: str) -> bool:
        return (
            self.repo.read_ref(self.refname(env_id)) is not None
            or self.repo.read_ref(self.tombstone_refname(env_id)) is not None
        )

    def _allocate_id(self, exclude: Optional[str] = None) -> str:
        for attempt in range(MAX_ID_ATTEMPTS):
            candidate = generate_environment_id()
            if attempt >= MAX_ID_ATTEMPTS // 2:
                candidate = f"{candidate}-{random.randint(2, 9999)}"
            if candidate != exclude and not self._id_taken(candidate):
                return candidate
        raise BranchboxError("Could not allocate an unused environment id")

    def default_config(self, commit: Commit) -> EnvironmentConfig:
        """Config stored in the commit's tree, falling back to settings defaults"""
        settings = get_settings()
        data = {
            "base_image": settings.DEFAULT_BASE_IMAGE,
            "workdir": settings.DEFAULT_WORKDIR,
        }
        raw = self.repo.read_file(commit, settings.CONFIG_PATH)
        if raw is not None:
            self.logger.debug(f"Loading environment config from {settings.CONFIG_PATH}")
            try:
                loaded = json.loads(raw)
            except json.JSONDecodeError as e:
                raise EnvironmentConfigError(settings.CONFIG_PATH, str(e)) from e
            if not isinstance(loaded, dict):
                raise EnvironmentConfigError(settings.CONFIG_PATH, "expected a JSON object")
            data.update(loaded)
        try:
            return EnvironmentConfig.model_validate(data)
        except ValidationError as e:
            raise EnvironmentConfigError(settings.CONFIG_PATH, str(e)) from e

    def create(
        self,
        engine: SnapshotEngine,
        title: str,
        description: str = "",
        from_ref: str = "HEAD",
        config: Optional[EnvironmentConfig] = None,
        timeout: Optional[float] = None,
        base: Optional[Commit] = None,
    ) -> Environment:
        """Build a new environment from ``from_ref`` and give it its own branch.

        The branch is only created after setup and install commands have all
        succeeded and the first commit is written, so a failed build leaves no
        trace in the repository.

        Args:
            base: ``from_ref`` already resolved by the caller, if available

        Raises:
            ReferenceNotFoundError: if ``from_ref`` does not resolve
            EnvironmentBuildError: if a setup or install command fails
        """
        from_ref = from_ref or "HEAD"
        if base is None:
            base = self.repo.resolve(from_ref)
        config = config or self.default_config(base)
        env_id = self._allocate_id()
        state = EnvironmentState(
            title=title, description=description, config=config, from_ref=from_ref
        )
        self.logger.info(f"Creating environment {env_id} from {from_ref} ({base.hexsha[:12]})")

        base_tree = base.tree.hexsha
        labels = {"branchbox.environment": env_id}
        with engine.materialized(base_tree, config, labels=labels) as container:
            engine.bootstrap(container, config, timeout=timeout)
            tree = engine.export_tree(container, base_tree, config.workdir)

        body_lines = [f"From: {from_ref} ({base.hexsha})"]
        body_lines += [f"Setup: {command}" for command in config.setup_commands]
        body_lines += [f"Install: {command}" for command in config.install_commands]
        message = format_commit_message(
            f"Create environment: {title}", state, body="\n".join(body_lines)
        )
        commit = self.repo.commit(base, tree, message)

        # Losing the race for an id only costs a new name; the commit is reused
        while not self.repo.compare_and_swap(
            self.refname(env_id), commit.hexsha, None, reason=f"branchbox: create {env_id}"
        ):
            self.logger.warning(f"Environment id {env_id} was taken concurrently, picking another")
            env_id = self._allocate_id(exclude=env_id)

        self.logger.info(f"Environment {env_id} created at {commit.hexsha[:12]}")
        return Environment(env_id, self.branch_name(env_id), state, commit, self.repo)

    def get(self, env_id: str) -> Environment:
        """Load an environment from the head of its branch

        Raises:
            EnvironmentNotFoundError: if there is no such environment
        """
        sha = self.repo.read_ref(self.refname(env_id))
        if sha is None:
            raise EnvironmentNotFoundError(env_id)
        commit = self.repo.resolve(sha)
        state = parse_state(commit.message)
        if state is None:
            self.logger.warning(f"Branch {self.branch_name(env_id)} has no environment state")
            raise EnvironmentNotFoundError(env_id)
        return Environment(env_id, self.branch_name(env_id), state, commit, self.repo)

    def update(self, environment: Environment, note: str = "") -> Optional[Commit]:
        """Commit the handle's head tree onto its branch.

        Returns the new commit, or None when there was nothing to commit.

        Raises:
            ConcurrentModificationError: if the branch moved since the handle
                was loaded; the branch is left untouched
        """
        if environment.handle_state == HandleState.DISCARDED:
            raise ValueError(f"Environment {environment.id} was discarded; nothing to persist")
        with self._lock(environment.id):
            if not environment.needs_persist:
                self.logger.info(f"Nothing to persist in environment {environment.id}, skipping commit")
                environment.mark_persisted()
                return None

            state = environment.state.model_copy(update={"updated_at": utcnow()})
            if note.strip():
                subject = note
                body = default_message(environment.last_result) if environment.last_result else ""
            else:
                subject = default_message(environment.last_result)
                body = ""
            message = format_commit_message(subject, state, body=body)

            expected = environment.head_commit.hexsha
            commit = self.repo.commit(environment.head_commit, environment.head_tree, message)
            if not self.repo.compare_and_swap(
                environment.refname, commit.hexsha, expected, reason=f"branchbox: {subject.strip()}"
            ):
                actual = self.repo.read_ref(environment.refname)
                self.logger.error(
                    f"Environment {environment.id} moved to {actual} while updating from {expected}"
                )
                raise ConcurrentModificationError(environment.id, expected, actual)

            environment.mark_persisted(commit, state)
            self.logger.info(f"Environment {environment.id} advanced to {commit.hexsha[:12]}")
            return commit

    def is_dirty(self) -> Tuple[bool, str]:
        """Whether the host working tree has uncommitted changes.

        Environments are built from committed history only, so this is a
        warning signal for callers, not a precondition.
        """
        return self.repo.working_tree_status()

    def list_environments(self) -> List[Environment]:
        """All environments, most recently updated first"""
        prefix = f"refs/heads/{self.prefix}/"
        environments = []
        for refname, sha in self.repo.list_refs(prefix):
            env_id = refname[len(prefix):]
            commit = self.repo.resolve(sha)
            state = parse_state(commit.message)
            if state is None:
                self.logger.warning(f"Skipping {refname}: no environment state")
                continue
            environments.append(Environment(env_id, self.branch_name(env_id), state, commit, self.repo))
        environments.sort(key=lambda env: env.state.updated_at, reverse=True)
        return environments

    def delete(self, env_id: str) -> None:
        """Delete an environment's branch and retire its id for good"""
        with self._lock(env_id):
            sha = self.repo.read_ref(self.refname(env_id))
            if sha is None:
                raise EnvironmentNotFoundError(env_id)
            tombstone = self.tombstone_refname(env_id)
            previous = self.repo.read_ref(tombstone)
            if not self.repo.compare_and_swap(
                tombstone, sha, previous, reason=f"branchbox: delete {env_id}"
            ):
                raise ConcurrentModificationError(env_id, sha, self.repo.read_ref(self.refname(env_id)))
            if not self.repo.delete_ref(self.refname(env_id), sha):
                raise ConcurrentModificationError(env_id, sha, self.repo.read_ref(self.refname(env_id)))
        self.logger.info(f"Deleted environment {env_id}")

    def history(self, env_id: str, limit: Optional[int] = None) -> List[Commit]:
        """Commits made by this environment, newest first, ending with its creation"""
        environment = self.get(env_id)
        commits = []
        for commit in self.repo.iter_first_parents(environment.head_commit.hexsha):
            state = parse_state(commit.message)
            if state is None or state.created_at != environment.state.created_at:
                break
            commits.append(commit)
            if limit is not None and len(commits) >= limit:
                break
        return commits

    def origin(self, env_id: str) -> Commit:
        """The commit the environment was created from"""
        return self.history(env_id)[-1].parents[0]

    def diff(self, env_id: str) -> str:
        """Unified diff of everything the environment changed since creation"""
        environment = self.get(env_id)
        return self.repo.diff(self.origin(env_id).tree.hexsha, environment.head_tree)
