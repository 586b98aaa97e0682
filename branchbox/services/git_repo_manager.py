import io
import logging
import os
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

import git
from git import Actor, Commit

from branchbox.core.config import get_settings
from branchbox.core.exceptions import ReferenceNotFoundError, RepositoryNotFoundError

ZERO_OID = "0" * 40
SYMLINK_MODE = 0o120000

# Applied on top of an empty config when staging exported filesystems
ISOLATED_CONFIG = (
    ("core.excludesFile", os.devnull),
    ("core.autocrlf", "false"),
)


class GitRepository:
    """Thin accessor over the host git repository.

    Resolves references, reports working tree status, writes commits from
    existing trees and moves refs with compare-and-swap semantics. It holds no
    environment state of its own.
    """

    def __init__(self, repo: git.Repo):
        self.repo = repo
        self.logger = logging.getLogger(__name__)

    @classmethod
    def open(cls, path: Union[str, Path] = ".") -> "GitRepository":
        """Open the repository containing ``path``"""
        try:
            repo = git.Repo(path, search_parent_directories=True)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
            raise RepositoryNotFoundError(str(path)) from e
        return cls(repo)

    def resolve(self, ref: str) -> Commit:
        """Resolve a branch, tag or sha to a commit

        Raises:
            ReferenceNotFoundError: if ``ref`` does not name a commit
        """
        try:
            return self.repo.commit(ref)
        except (git.exc.BadName, git.exc.BadObject, ValueError) as e:
            raise ReferenceNotFoundError(ref) from e

    def current_head(self) -> Commit:
        return self.resolve("HEAD")

    def working_tree_status(self) -> Tuple[bool, str]:
        """Return whether the host working tree is dirty, plus porcelain status text"""
        status = self.repo.git.status("--porcelain")
        return bool(status.strip()), status

    def commit(self, parent: Commit, tree: str, message: str) -> Commit:
        """Write a commit object for ``tree`` on top of ``parent``.

        No ref is moved; callers publish the commit with ``compare_and_swap``.
        """
        settings = get_settings()
        actor = Actor(settings.COMMIT_AUTHOR_NAME, settings.COMMIT_AUTHOR_EMAIL)
        commit = Commit.create_from_tree(
            self.repo,
            self.repo.tree(tree),
            message,
            parent_commits=[parent],
            head=False,
            author=actor,
            committer=actor,
        )
        self.logger.debug(f"Wrote commit {commit.hexsha} (tree {tree}, parent {parent.hexsha})")
        return commit

    def read_ref(self, refname: str) -> Optional[str]:
        """Return the commit sha a ref points at, or None if it does not exist"""
        try:
            return self.repo.git.rev_parse("--verify", "--quiet", f"{refname}^{{commit}}")
        except git.GitCommandError:
            return None

    def compare_and_swap(
        self, refname: str, new: str, expected: Optional[str], reason: str = "branchbox"
    ) -> bool:
        """Atomically point ``refname`` at ``new`` if it currently points at ``expected``

        Args:
            refname: Full ref name, e.g. refs/heads/branchbox/adaptive-koala
            new: Commit sha to store
            expected: Commit sha the ref must hold, or None if it must not exist
            reason: Reflog message

        Returns:
            False if the ref did not hold ``expected``; True once updated
        """
        try:
            self.repo.git.update_ref("-m", reason, refname, new, expected or ZERO_OID)
        except git.GitCommandError:
            if self.read_ref(refname) != expected:
                return False
            raise
        self.logger.debug(f"Moved {refname} to {new}")
        return True

    def delete_ref(self, refname: str, expected: str) -> bool:
        """Delete ``refname`` if it still points at ``expected``"""
        try:
            self.repo.git.update_ref("-d", refname, expected)
        except git.GitCommandError:
            if self.read_ref(refname) != expected:
                return False
            raise
        self.logger.debug(f"Deleted {refname}")
        return True

    def list_refs(self, prefix: str) -> List[Tuple[str, str]]:
        """List (refname, sha) pairs under ``prefix``"""
        output = self.repo.git.for_each_ref("--format=%(refname) %(objectname)", prefix)
        refs = []
        for line in output.splitlines():
            refname, _, sha = line.strip().partition(" ")
            if refname:
                refs.append((refname, sha))
        return refs

    def read_file(self, commit: Commit, path: str) -> Optional[str]:
        """Read a text file from a commit's tree, or None if it is absent"""
        try:
            blob = commit.tree / path
        except KeyError:
            return None
        if blob.type != "blob":
            return None
        return blob.data_stream.read().decode("utf-8")

    def archive(self, tree: str, prefix: str = "") -> bytes:
        """Export a tree as an uncompressed tar archive, paths under ``prefix``.

        Built from the tree objects directly rather than with ``git archive``,
        so ``export-ignore`` and ``export-subst`` attributes do not apply and
        every tracked file reaches the container as committed.
        """
        root = prefix.strip("/")
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
            if root:
                tar.addfile(self._tar_entry(root, tarfile.DIRTYPE, 0o755))
            for item in self.repo.tree(tree).traverse():
                name = f"{root}/{item.path}" if root else item.path
                if item.type in ("tree", "submodule"):
                    # Submodules become empty directories, their objects live elsewhere
                    tar.addfile(self._tar_entry(name, tarfile.DIRTYPE, 0o755))
                elif item.mode == SYMLINK_MODE:
                    entry = self._tar_entry(name, tarfile.SYMTYPE, 0o777)
                    entry.linkname = item.data_stream.read().decode("utf-8", errors="surrogateescape")
                    tar.addfile(entry)
                else:
                    data = item.data_stream.read()
                    mode = 0o755 if item.mode & 0o111 else 0o644
                    entry = self._tar_entry(name, tarfile.REGTYPE, mode)
                    entry.size = len(data)
                    tar.addfile(entry, io.BytesIO(data))
        return buffer.getvalue()

    @staticmethod
    def _tar_entry(name: str, kind: bytes, mode: int) -> tarfile.TarInfo:
        entry = tarfile.TarInfo(name)
        entry.type = kind
        entry.mode = mode
        return entry

    def _isolated_env(self, scratch: str, work_tree: Union[str, Path]) -> Dict[str, str]:
        """Environment for git commands that share only the object store with the host.

        The scratch git dir has no ``info/exclude`` or config of its own, and
        system and global config are disabled, so only ``.gitignore`` and
        ``.gitattributes`` files inside ``work_tree`` affect staging.
        """
        git_dir = os.path.join(scratch, "git")
        os.makedirs(os.path.join(git_dir, "refs"))
        with open(os.path.join(git_dir, "HEAD"), "w") as f:
            f.write("ref: refs/heads/main\n")
        return {
            "GIT_DIR": git_dir,
            "GIT_OBJECT_DIRECTORY": os.path.join(self.repo.common_dir, "objects"),
            "GIT_WORK_TREE": str(work_tree),
            "GIT_INDEX_FILE": os.path.join(scratch, "index"),
            "GIT_CONFIG_NOSYSTEM": "1",
            "GIT_CONFIG_GLOBAL": os.devnull,
            "GIT_CONFIG_COUNT": str(len(ISOLATED_CONFIG)),
            **{f"GIT_CONFIG_KEY_{i}": key for i, (key, _) in enumerate(ISOLATED_CONFIG)},
            **{f"GIT_CONFIG_VALUE_{i}": value for i, (_, value) in enumerate(ISOLATED_CONFIG)},
        }

    def write_tree_from_directory(self, directory: Union[str, Path], base_tree: Optional[str] = None) -> str:
        """Stage a plain directory into a new tree object.

        A private index seeded from ``base_tree`` is used, so the repository's
        own index and working tree are never touched. ``.gitignore`` files in
        the directory apply, the host's excludes and config do not, removed
        files drop out of the tree and blobs that already exist in the object
        store are reused.
        """
        with tempfile.TemporaryDirectory(prefix="branchbox-index-") as scratch:
            env = self._isolated_env(scratch, directory)
            runner = git.Git(str(directory))
            if base_tree:
                runner.read_tree(base_tree, env=env)
            runner.add("--all", env=env)
            tree = runner.write_tree(env=env)
        self.logger.debug(f"Staged {directory} as tree {tree}")
        return tree

    def diff(self, old_tree: str, new_tree: str) -> str:
        return self.repo.git.diff(old_tree, new_tree)

    def iter_first_parents(self, start: str) -> Iterator[Commit]:
        return self.repo.iter_commits(start, first_parent=True)
