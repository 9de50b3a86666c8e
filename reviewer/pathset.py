import logging
import os
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Union

from .errors import PathEscape
from .models import ArchiveSpec


logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


def canonical(path: PathLike) -> Path:
    """Absolute path with symlinks and ``..`` resolved."""
    return Path(os.path.realpath(os.path.abspath(os.fspath(path))))


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def first_parent(path: Path, directories: Sequence[Path]) -> Optional[Path]:
    for directory in directories:
        if is_within(path, directory):
            return directory
    return None


def _warn_walk_error(error: OSError) -> None:
    logger.warning("Skipping %s because of error: %s", error.filename, error.strerror or error)


def list_files(directories: Iterable[Optional[PathLike]]) -> List[Path]:
    """Return every regular file below ``directories`` as a canonical path.

    Directories are walked in sorted order so the result is stable for a given
    file system state. Inputs that do not exist or are not directories add
    nothing. A file reachable through several inputs is listed once.
    """
    files: List[Path] = []
    seen: Set[Path] = set()
    for directory in directories:
        if directory is None or not os.path.isdir(directory):
            continue
        base = canonical(directory)
        for root, dirs, names in os.walk(base, onerror=_warn_walk_error):
            dirs.sort()
            for name in sorted(names):
                p = Path(root) / name
                if not p.is_file():
                    continue
                resolved = canonical(p)
                if resolved in seen:
                    continue
                seen.add(resolved)
                files.append(resolved)
    return files


def write_archive(
    members: Iterable[PathLike],
    root: PathLike,
    exclude_dirs: Optional[Iterable[PathLike]],
    destination: PathLike,
) -> ArchiveSpec:
    """Zip ``members`` into ``destination`` with names relative to ``root``.

    Every member must resolve below ``root``; the first one that does not
    raises ``PathEscape`` before the archive file is created. Members below any
    of ``exclude_dirs`` are left out with a warning, and members that cannot be
    read are skipped with a warning.
    """
    canonical_root = canonical(root)
    normalized: List[Path] = []
    seen: Set[Path] = set()
    for member in members:
        resolved = canonical(member)
        if resolved == canonical_root or not is_within(resolved, canonical_root):
            raise PathEscape(f"{canonical_root} is not a parent directory of {resolved}")
        if resolved in seen:
            continue
        seen.add(resolved)
        normalized.append(resolved)

    excluded = [canonical(d) for d in (exclude_dirs or ())]
    kept: List[Path] = []
    for member in normalized:
        parent = first_parent(member, excluded)
        if parent is not None:
            logger.warning("Excluding %s from %s because it is under %s", member, Path(destination).name, parent)
            continue
        kept.append(member)

    destination = Path(destination)
    written: List[Path] = []
    with zipfile.ZipFile(destination, "x", compression=zipfile.ZIP_DEFLATED) as zf:
        for member in kept:
            arcname = member.relative_to(canonical_root).as_posix()
            try:
                zf.write(member, arcname=arcname)
            except OSError as e:
                logger.warning("Skipping file %s because of error: %s", member, e)
                continue
            written.append(member)
    logger.debug("Wrote %d entries to %s", len(written), destination)
    return ArchiveSpec(root=canonical_root, members=tuple(written), name=destination.name)
