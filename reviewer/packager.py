"""Select, zip and upload the source and build artifacts of one analysis run."""

import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import find_ignore_file
from .errors import BuildDirNotFound, DirectoryNotFound, EmptySelection, InvalidRepository, PathEscape
from .models import ArchiveSpec, RevisionRange, ScanMetadata, SelectionPolicy, TrackedFileSet
from .pathset import canonical, is_within, list_files, write_archive


logger = logging.getLogger(__name__)

SOURCE_PREFIX = "analysis-src-"
BUILD_PREFIX = "analysis-bin-"
GIT_DIR_NAME = ".git"


def archive_name(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4()}.zip"


def check_source_dirs(repo_root: Path, source_dirs: Iterable[Path]) -> List[Path]:
    """Canonical source directories; each must exist below ``repo_root``."""
    root = canonical(repo_root)
    checked: List[Path] = []
    for source_dir in source_dirs:
        if not os.path.isdir(source_dir):
            raise DirectoryNotFound(f"{source_dir} is not a valid directory")
        resolved = canonical(source_dir)
        if not is_within(resolved, root):
            raise PathEscape(f"{source_dir} is not a sub-directory of {root}")
        checked.append(resolved)
    return checked


def check_build_dirs(build_dirs: Optional[Iterable[Path]]) -> List[Path]:
    checked: List[Path] = []
    for build_dir in build_dirs or ():
        if not os.path.isdir(build_dir):
            raise BuildDirNotFound(f"provided build directory not found {build_dir}")
        checked.append(canonical(build_dir))
    return checked


def select_tracked(source_files: Sequence[Path], tracked_files: TrackedFileSet) -> Tuple[Path, ...]:
    """Files of ``source_files`` that are under version control, in walk order."""
    return tuple(f for f in source_files if f in tracked_files)


def select_sources(
    repo_root: Path,
    source_dirs: Sequence[Path],
    revisions: RevisionRange,
    tracked_files: TrackedFileSet,
    policy: SelectionPolicy,
) -> List[Path]:
    root = canonical(repo_root)
    git_dir = root / GIT_DIR_NAME
    if revisions.is_diff and not git_dir.is_dir():
        raise InvalidRepository(f"{git_dir} is not a directory, cannot package the history of a commit range")
    if policy is SelectionPolicy.TRACKED_ONLY:
        candidates = list_files(source_dirs)
        selected = list(select_tracked(candidates, tracked_files))
        if not selected:
            raise EmptySelection(
                "no versioned files to analyze in directories: " + ", ".join(str(d) for d in source_dirs)
            )
        logger.info("Adding %d out of %d files under version control in %s", len(selected), len(candidates), root)
        if revisions.is_diff:
            # the service needs the history to recompute the diff
            selected.extend(list_files([git_dir]))
    else:
        directories = list(source_dirs)
        if revisions.is_diff:
            directories.append(git_dir)
        selected = list_files(directories)

    ignore_file = find_ignore_file(root)
    if ignore_file is not None:
        resolved = canonical(ignore_file)
        if resolved not in selected:
            selected.append(resolved)
    return selected


def build_archives(
    repo_root: Path,
    members: Sequence[Path],
    build_dirs: Sequence[Path],
    scratch_dir: Path,
) -> Tuple[ArchiveSpec, Optional[ArchiveSpec]]:
    """Write the source archive and, if there are build directories, the build archive.

    Source members under a build directory are left to the build archive; if
    that leaves no source files, ``EmptySelection`` is raised.
    """
    source = write_archive(members, repo_root, build_dirs, scratch_dir / archive_name(SOURCE_PREFIX))
    if not source.members:
        if build_dirs:
            raise EmptySelection(
                f"every selected source file under {canonical(repo_root)} is inside a build directory: "
                + ", ".join(str(d) for d in build_dirs)
            )
        raise EmptySelection(f"no files to analyze under {canonical(repo_root)}")
    if not build_dirs:
        return source, None
    build_root = Path(os.path.commonpath([str(d) for d in build_dirs]))
    build = write_archive(list_files(build_dirs), build_root, None, scratch_dir / archive_name(BUILD_PREFIX))
    return source, build


def package(
    repo_root: Path,
    source_dirs: Sequence[Path],
    build_dirs: Optional[Sequence[Path]],
    revisions: RevisionRange,
    tracked_files: TrackedFileSet,
    policy: SelectionPolicy,
    bucket: str,
    store,
) -> ScanMetadata:
    """Zip the selected artifacts into a private scratch directory and upload them to ``bucket``.

    ``store`` needs a ``put(bucket, key, local_path)`` method. The scratch
    directory is removed whether or not the upload succeeds.
    """
    root = canonical(repo_root)
    sources = check_source_dirs(root, source_dirs)
    builds = check_build_dirs(build_dirs)
    members = select_sources(root, sources, revisions, tracked_files, policy)

    with tempfile.TemporaryDirectory(prefix="artifact-packing-dir") as scratch:
        scratch_dir = Path(scratch)
        source, build = build_archives(root, members, builds, scratch_dir)
        logger.info("Packed %d source files into %s", len(source.members), source.name)
        store.put(bucket, source.name, scratch_dir / source.name)
        build_key = None
        if build is not None:
            logger.info("Packed %d build files into %s", len(build.members), build.name)
            store.put(bucket, build.name, scratch_dir / build.name)
            build_key = build.name

    return ScanMetadata(
        bucket_name=bucket,
        repository_root=root,
        source_directories=sources,
        source_key=source.name,
        build_key=build_key,
        before_commit=revisions.before,
        after_commit=revisions.after,
    )
