import logging
from pathlib import Path
from typing import List, Optional, Set

import git

from .errors import EmptyChangeSet, InvalidRepository, InvalidRevision
from .models import EMPTY_TREE_SHA, ChangeSet, RepositoryHandle, RevisionRange, TrackedFileSet
from .pathset import canonical


logger = logging.getLogger(__name__)

GIT_DIR_NAME = ".git"

_RESOLVE_ERRORS = (git.exc.BadName, git.exc.BadObject, git.exc.GitCommandError, ValueError, IndexError)


def open_repository(repo_root: Path, allow_unmanaged: bool = False) -> RepositoryHandle:
    """Open the git repository at or above ``repo_root``.

    With ``allow_unmanaged`` a directory without version control yields a
    handle with no branch, remote or backing repository instead of an error.
    """
    root = canonical(repo_root)
    try:
        repo = git.Repo(root, search_parent_directories=True)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError):
        if allow_unmanaged:
            logger.debug("%s is not under version control", root)
            return RepositoryHandle(working_tree_root=root)
        raise InvalidRepository(f"no git metadata found at or above {root}")

    if repo.working_tree_dir is None:
        repo.close()
        raise InvalidRepository(f"{root} is a bare repository")

    with repo.config_reader() as reader:
        user_name = reader.get_value("user", "email", "")
        remote_url = reader.get_value('remote "origin"', "url", "")
    try:
        branch: Optional[str] = repo.active_branch.name
    except TypeError:
        # detached HEAD
        branch = None
    return RepositoryHandle(
        working_tree_root=canonical(repo.working_tree_dir),
        branch=branch,
        remote_url=str(remote_url) or None,
        user_name=str(user_name) or None,
        repo=repo,
    )


def resolve_sha(repo: git.Repo, revision: str) -> str:
    """Resolve any revision expression (``HEAD^^``, a short hash, a branch) to a full commit id."""
    try:
        return repo.commit(revision).hexsha
    except _RESOLVE_ERRORS as e:
        raise InvalidRevision(f"invalid commit {revision}") from e


def diff_trees(repo: git.Repo, before: str, after: str) -> List[str]:
    try:
        out = repo.git.diff_tree(before, after, r=True, name_only=True, no_commit_id=True, z=True)
    except git.exc.GitCommandError as e:
        raise InvalidRevision(f"cannot diff {before} against {after}") from e
    return [p for p in out.split("\0") if p]


def check_history_dir(handle: RepositoryHandle, repo_root: Optional[Path] = None) -> Path:
    """The ``.git`` directory that has to travel with a commit range analysis.

    It must be a real directory directly under ``repo_root`` (the working tree
    root by default). A repository found above ``repo_root``, a linked worktree
    or a submodule keeps its history elsewhere and raises ``InvalidRepository``.
    """
    root = canonical(repo_root) if repo_root is not None else handle.working_tree_root
    if handle.working_tree_root != root:
        raise InvalidRepository(
            f"{root} is inside the repository at {handle.working_tree_root}; "
            "use the repository root as root directory to analyze a commit range"
        )
    git_dir = root / GIT_DIR_NAME
    if not git_dir.is_dir():
        raise InvalidRepository(f"{git_dir} is not a directory, cannot analyze a commit range without it")
    return git_dir


def resolve_range(
    handle: RepositoryHandle,
    revisions: RevisionRange,
    repo_root: Optional[Path] = None,
) -> RevisionRange:
    """Return ``revisions`` with canonical commit ids and the changes between them.

    A range whose trees are identical raises ``EmptyChangeSet``. An all-zero
    ``before`` stands for the empty tree, so every file counts as added.
    The history has to sit in ``<repo_root>/.git``, see ``check_history_dir``.
    """
    if not revisions.is_diff:
        return revisions
    if not handle.is_managed:
        raise InvalidRepository(
            f"{handle.working_tree_root} is not under version control, cannot analyze {revisions.before}:{revisions.after}"
        )
    check_history_dir(handle, repo_root)
    repo = handle.repo
    if set(revisions.before) == {"0"}:
        before = EMPTY_TREE_SHA
    else:
        before = resolve_sha(repo, revisions.before)
    after = resolve_sha(repo, revisions.after)

    changes = diff_trees(repo, before, after)
    if not changes:
        raise EmptyChangeSet(f"no changes between {revisions.before} ({before}) and {revisions.after} ({after})")
    logger.debug("%d files changed between %s and %s", len(changes), before, after)
    return RevisionRange(before=before, after=after, changes=ChangeSet(tuple(changes)))


def list_tracked_files(handle: RepositoryHandle) -> TrackedFileSet:
    """Files of the HEAD tree that currently exist on disk, as canonical paths."""
    if not handle.is_managed:
        return frozenset()
    repo = handle.repo
    if not repo.head.is_valid():
        # no commits yet
        return frozenset()

    root = canonical(repo.working_tree_dir)
    files: Set[Path] = set()
    missing = 0
    pending = [repo.head.commit.tree]
    while pending:
        tree = pending.pop()
        pending.extend(tree.trees)
        for blob in tree.blobs:
            path = canonical(root / blob.path)
            if path.is_file():
                files.add(path)
            else:
                missing += 1
    if missing:
        logger.debug("%d tracked files are missing from the working tree", missing)
    return frozenset(files)
