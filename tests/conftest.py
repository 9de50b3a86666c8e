import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import git
import pytest

from reviewer.models import Finding, ScanMetadata


def write(path: Path, text: str = "x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def commit_all(repo: git.Repo, message: str = "commit") -> git.Commit:
    repo.git.add(A=True)
    return repo.index.commit(message)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    d = tmp_path / "project"
    d.mkdir()
    return d


@pytest.fixture
def repo(project: Path) -> git.Repo:
    r = git.Repo.init(project)
    with r.config_writer() as cw:
        cw.set_value("user", "name", "Dev")
        cw.set_value("user", "email", "dev@example.com")
    yield r
    r.close()


class FakeStore:
    """Records uploads and keeps a copy of every uploaded archive."""

    def __init__(self, scratch: Path):
        self.scratch = scratch
        self.uploads: Dict[str, Path] = {}
        self.local_paths: List[Path] = []
        self.deleted: List[Tuple[str, Optional[str]]] = []
        self.buckets = set()

    def put(self, bucket: str, key: str, local_path: Path) -> None:
        self.local_paths.append(Path(local_path))
        copy = self.scratch / key
        shutil.copyfile(local_path, copy)
        self.uploads[key] = copy

    def delete(self, bucket: str, key: Optional[str]) -> None:
        self.deleted.append((bucket, key))

    def bucket_exists(self, bucket: str) -> bool:
        return bucket in self.buckets

    def create_bucket(self, bucket: str, region: str) -> None:
        self.buckets.add(bucket)


@pytest.fixture
def store(tmp_path: Path) -> FakeStore:
    d = tmp_path / "uploaded"
    d.mkdir()
    return FakeStore(d)


ASSOCIATION = {
    "AssociationArn": "arn:aws:codeguru-reviewer:us-east-1:111122223333:association:abc",
    "Name": "project",
    "State": "Associated",
    "S3RepositoryDetails": {"BucketName": "codeguru-reviewer-test"},
}


class FakeService:
    def __init__(self, store: FakeStore, findings: Optional[List[Finding]] = None, association=ASSOCIATION):
        self.store = store
        self.findings = findings or []
        self.association = association
        self.started: List[ScanMetadata] = []
        self.cleaned: List[ScanMetadata] = []

    def get_association(self, repo_name, bucket_name, kms_key_id, confirm):
        return self.association

    def start_review(self, association, metadata, handle):
        metadata.code_review_arn = "arn:aws:codeguru-reviewer:us-east-1:111122223333:code-review:xyz"
        metadata.association_arn = association["AssociationArn"]
        metadata.region = "us-east-1"
        self.started.append(metadata)
        return metadata

    def wait_for_review(self, code_review_arn):
        return list(self.findings)

    def cleanup(self, metadata):
        self.cleaned.append(metadata)


def make_finding(file_path="src/A.java", severity="High", line=3, rule_id="rule-1", **kw) -> Finding:
    return Finding(
        id=kw.pop("id", "rec-1"),
        file_path=file_path,
        severity=severity,
        line=line,
        end_line=kw.pop("end_line", line),
        rule_id=rule_id,
        rule_name=kw.pop("rule_name", "Rule"),
        description=kw.pop("description", "something is off"),
        **kw,
    )
