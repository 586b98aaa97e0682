import io
import tarfile

import pytest
from git import Repo

from branchbox.core.exceptions import ReferenceNotFoundError, RepositoryNotFoundError
from branchbox.services.git_repo_manager import GitRepository


def test_open_outside_repository(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(RepositoryNotFoundError):
        GitRepository.open(plain)


def test_open_from_subdirectory(test_repo):
    sub = test_repo / "nested" / "dir"
    sub.mkdir(parents=True)
    repository = GitRepository.open(sub)
    assert repository.current_head().message.strip() == "Initial commit"


def test_resolve_unknown_ref(repository):
    with pytest.raises(ReferenceNotFoundError) as exc_info:
        repository.resolve("no-such-ref")
    assert exc_info.value.ref == "no-such-ref"
    assert isinstance(exc_info.value, LookupError)


def test_resolve_sha_and_head_agree(repository):
    head = repository.current_head()
    assert repository.resolve(head.hexsha) == head
    assert repository.resolve("HEAD") == head


def test_working_tree_status(test_repo, repository):
    dirty, status = repository.working_tree_status()
    assert dirty is False
    assert status == ""

    (test_repo / "test.txt").write_text("changed")
    (test_repo / "new.txt").write_text("untracked")
    dirty, status = repository.working_tree_status()
    assert dirty is True
    assert "test.txt" in status
    assert "new.txt" in status


def test_commit_does_not_move_head(repository):
    head = repository.current_head()
    commit = repository.commit(head, head.tree.hexsha, "Snapshot")

    assert list(commit.parents) == [head]
    assert commit.tree.hexsha == head.tree.hexsha
    assert repository.current_head() == head


def test_compare_and_swap_creates_ref_once(repository):
    head = repository.current_head()
    refname = "refs/heads/branchbox/calm-otter"

    assert repository.compare_and_swap(refname, head.hexsha, None) is True
    assert repository.read_ref(refname) == head.hexsha
    # A second create-if-absent must lose
    assert repository.compare_and_swap(refname, head.hexsha, None) is False


def test_compare_and_swap_rejects_stale_expected(repository):
    head = repository.current_head()
    refname = "refs/heads/branchbox/calm-otter"
    repository.compare_and_swap(refname, head.hexsha, None)

    first = repository.commit(head, head.tree.hexsha, "first")
    second = repository.commit(head, head.tree.hexsha, "second")
    assert repository.compare_and_swap(refname, first.hexsha, head.hexsha) is True
    assert repository.compare_and_swap(refname, second.hexsha, head.hexsha) is False
    assert repository.read_ref(refname) == first.hexsha


def test_delete_ref_requires_expected(repository):
    head = repository.current_head()
    other = repository.commit(head, head.tree.hexsha, "other")
    refname = "refs/heads/branchbox/calm-otter"
    repository.compare_and_swap(refname, head.hexsha, None)

    assert repository.delete_ref(refname, other.hexsha) is False
    assert repository.read_ref(refname) == head.hexsha
    assert repository.delete_ref(refname, head.hexsha) is True
    assert repository.read_ref(refname) is None


def test_list_refs(repository):
    head = repository.current_head()
    repository.compare_and_swap("refs/heads/branchbox/a", head.hexsha, None)
    repository.compare_and_swap("refs/heads/branchbox/b", head.hexsha, None)

    refs = dict(repository.list_refs("refs/heads/branchbox/"))
    assert refs == {
        "refs/heads/branchbox/a": head.hexsha,
        "refs/heads/branchbox/b": head.hexsha,
    }


def test_read_file(repository):
    head = repository.current_head()
    assert repository.read_file(head, "test.txt") == "Hello world! This is a test file."
    assert repository.read_file(head, "missing.txt") is None


def test_archive_places_files_under_prefix(repository):
    head = repository.current_head()
    data = repository.archive(head.tree.hexsha, prefix="/workdir")

    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        names = tar.getnames()
        content = tar.extractfile("workdir/test.txt").read()
    assert "workdir/test.txt" in names
    assert content == b"Hello world! This is a test file."


def test_write_tree_from_identical_directory_reuses_tree(tmp_path, repository):
    head = repository.current_head()
    directory = tmp_path / "copy"
    directory.mkdir()
    (directory / "test.txt").write_text("Hello world! This is a test file.")

    assert repository.write_tree_from_directory(directory) == head.tree.hexsha
    assert repository.write_tree_from_directory(directory, head.tree.hexsha) == head.tree.hexsha


def test_write_tree_records_deletions_and_additions(tmp_path, repository):
    head = repository.current_head()
    directory = tmp_path / "changed"
    directory.mkdir()
    (directory / "new.txt").write_text("new")

    tree = repository.repo.tree(repository.write_tree_from_directory(directory, head.tree.hexsha))
    assert [blob.path for blob in tree.blobs] == ["new.txt"]


def test_write_tree_honours_gitignore(tmp_path, repository):
    directory = tmp_path / "ignored"
    directory.mkdir()
    (directory / ".gitignore").write_text("build/\n")
    (directory / "build").mkdir()
    (directory / "build" / "output.o").write_text("binary")
    (directory / "main.c").write_text("int main() {}")

    tree = repository.repo.tree(repository.write_tree_from_directory(directory))
    paths = sorted(item.path for item in tree.traverse())
    assert paths == [".gitignore", "main.c"]


def test_write_tree_leaves_host_index_alone(tmp_path, repository):
    directory = tmp_path / "elsewhere"
    directory.mkdir()
    (directory / "other.txt").write_text("other")

    repository.write_tree_from_directory(directory)
    assert repository.working_tree_status() == (False, "")


def test_archive_ignores_export_attributes(test_repo, repository):
    repo = Repo(test_repo)
    (test_repo / ".gitattributes").write_text("secret.txt export-ignore\nversion.txt export-subst\n")
    (test_repo / "secret.txt").write_text("keep me\n")
    (test_repo / "version.txt").write_text("$Format:%H$\n")
    repo.index.add([".gitattributes", "secret.txt", "version.txt"])
    head = repo.index.commit("Add attributes")

    with tarfile.open(fileobj=io.BytesIO(repository.archive(head.tree.hexsha, prefix="/workdir"))) as tar:
        secret = tar.extractfile("workdir/secret.txt").read()
        version = tar.extractfile("workdir/version.txt").read()
    assert secret == b"keep me\n"
    assert version == b"$Format:%H$\n"


def test_archive_keeps_modes_and_symlinks(test_repo, repository):
    repo = Repo(test_repo)
    script = test_repo / "bin" / "run.sh"
    script.parent.mkdir()
    script.write_text("#!/bin/sh\necho run\n")
    script.chmod(0o755)
    (test_repo / "link.txt").symlink_to("test.txt")
    repo.index.add(["bin/run.sh", "link.txt"])
    head = repo.index.commit("Add script and link")

    with tarfile.open(fileobj=io.BytesIO(repository.archive(head.tree.hexsha))) as tar:
        members = {member.name: member for member in tar.getmembers()}
    assert members["bin"].isdir()
    assert members["bin/run.sh"].mode & 0o111
    assert members["link.txt"].issym()
    assert members["link.txt"].linkname == "test.txt"
    assert not members["test.txt"].mode & 0o111


def test_write_tree_ignores_host_excludes(test_repo, tmp_path, repository):
    (test_repo / ".git" / "info").mkdir(exist_ok=True)
    (test_repo / ".git" / "info" / "exclude").write_text("*.log\n")
    global_ignore = tmp_path / "global-ignore"
    global_ignore.write_text("*.tmp\n")
    with repository.repo.config_writer() as writer:
        writer.set_value("core", "excludesFile", str(global_ignore))

    directory = tmp_path / "exported"
    directory.mkdir()
    (directory / "build.log").write_text("FAIL\n")
    (directory / "scratch.tmp").write_text("tmp\n")
    (directory / ".gitignore").write_text("*.o\n")
    (directory / "main.o").write_text("obj")

    tree = repository.repo.tree(repository.write_tree_from_directory(directory))
    assert sorted(item.path for item in tree.traverse()) == [".gitignore", "build.log", "scratch.tmp"]
