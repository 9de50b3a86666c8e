from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .errors import InvalidRevision


# Tree id git reports for a commit without any files.
EMPTY_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
NULL_COMMIT_SHA = "0" * 40


@dataclass
class RepositoryHandle:
    """An opened repository bound to a working-tree root.

    ``repo`` is the backing GitPython ``Repo``; it is None for a directory that is
    not under version control, in which case branch and remote are unknown.
    """

    working_tree_root: Path
    branch: Optional[str] = None
    remote_url: Optional[str] = None
    user_name: Optional[str] = None
    repo: Optional[Any] = None

    @property
    def is_managed(self) -> bool:
        return self.repo is not None

    def close(self) -> None:
        if self.repo is not None:
            self.repo.close()

    def __enter__(self) -> "RepositoryHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass(frozen=True)
class ChangeSet:
    paths: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.paths)

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths)


@dataclass(frozen=True)
class RevisionRange:
    before: Optional[str] = None
    after: Optional[str] = None
    changes: ChangeSet = field(default_factory=ChangeSet)

    def __post_init__(self):
        if (self.before is None) != (self.after is None):
            raise InvalidRevision(f"both ends of a commit range are required, got {self.before}:{self.after}")

    @property
    def is_diff(self) -> bool:
        return self.before is not None and self.after is not None

    @classmethod
    def parse(cls, commit_range: Optional[str]) -> "RevisionRange":
        """Parse ``before:after``; None or an empty string means full-tree mode."""
        if not commit_range:
            return cls()
        commits = commit_range.split(":")
        if len(commits) != 2 or not all(c.strip() for c in commits):
            raise InvalidRevision(f"invalid commit range '{commit_range}', use '[before commit]:[after commit]'")
        return cls(before=commits[0].strip(), after=commits[1].strip())


TrackedFileSet = FrozenSet[Path]


class SelectionPolicy(str, Enum):
    FULL_TREE = "full-tree"
    TRACKED_ONLY = "tracked-only"


@dataclass(frozen=True)
class ArchiveSpec:
    root: Path
    members: Tuple[Path, ...]
    name: str


@dataclass(frozen=True)
class ReviewRequest:
    """Everything one invocation needs, resolved once by the CLI."""

    root_dir: Path
    source_dirs: Tuple[Path, ...]
    build_dirs: Tuple[Path, ...] = ()
    revisions: RevisionRange = field(default_factory=RevisionRange)
    region: str = "us-east-1"
    profile: Optional[str] = None
    bucket_name: Optional[str] = None
    kms_key_id: Optional[str] = None
    output_dir: Path = Path("./code-review")
    poll_seconds: float = 2.0

    @property
    def repo_name(self) -> str:
        return self.root_dir.name


@dataclass
class ScanMetadata:
    bucket_name: str
    repository_root: Path
    source_directories: List[Path]
    source_key: str
    build_key: Optional[str] = None
    association_arn: Optional[str] = None
    code_review_arn: Optional[str] = None
    region: Optional[str] = None
    before_commit: Optional[str] = None
    after_commit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["repository_root"] = str(self.repository_root)
        data["source_directories"] = [str(p) for p in self.source_directories]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanMetadata":
        return cls(
            bucket_name=data["bucket_name"],
            repository_root=Path(data["repository_root"]),
            source_directories=[Path(p) for p in data.get("source_directories") or []],
            source_key=data["source_key"],
            build_key=data.get("build_key"),
            association_arn=data.get("association_arn"),
            code_review_arn=data.get("code_review_arn"),
            region=data.get("region"),
            before_commit=data.get("before_commit"),
            after_commit=data.get("after_commit"),
        )


@dataclass
class Finding:
    id: Optional[str]
    file_path: str
    severity: Optional[str]
    line: Optional[int]
    end_line: Optional[int]
    rule_id: Optional[str]
    rule_name: Optional[str]
    description: str
    category: Optional[str] = None
    tags: Optional[List[str]] = None

    @classmethod
    def from_summary(cls, summary: Dict[str, Any]) -> "Finding":
        rule = summary.get("RuleMetadata") or {}
        return cls(
            id=summary.get("RecommendationId"),
            file_path=summary.get("FilePath", ""),
            severity=summary.get("Severity"),
            line=summary.get("StartLine"),
            end_line=summary.get("EndLine"),
            rule_id=rule.get("RuleId"),
            rule_name=rule.get("RuleName"),
            description=summary.get("Description", ""),
            category=summary.get("RecommendationCategory"),
            tags=rule.get("RuleTags"),
        )


class Outcome(str, Enum):
    OK = "ok"
    DECLINED = "declined"
    FAILED = "failed"


@dataclass
class RunResult:
    outcome: Outcome
    metadata: Optional[ScanMetadata] = None
    findings: List[Finding] = field(default_factory=list)
    error: Optional[Exception] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, metadata: ScanMetadata, findings: List[Finding]) -> "RunResult":
        return cls(Outcome.OK, metadata=metadata, findings=findings)

    @classmethod
    def declined(cls, reason: str) -> "RunResult":
        return cls(Outcome.DECLINED, reason=reason)

    @classmethod
    def failed(cls, error: Exception, metadata: Optional[ScanMetadata] = None) -> "RunResult":
        return cls(Outcome.FAILED, metadata=metadata, error=error)
