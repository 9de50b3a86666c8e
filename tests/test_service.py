from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from conftest import ASSOCIATION, FakeStore
from reviewer.errors import BadBucketName, ServiceError
from reviewer.models import RepositoryHandle, ScanMetadata
from reviewer.service import ReviewService, build_review_request


def client_error(code="AccessDeniedException", op="Operation"):
    return ClientError({"Error": {"Code": code, "Message": "nope"}}, op)


class FakeClient:
    """Answers boto3 calls from queued responses, recording every call."""

    def __init__(self, **responses):
        self.responses = {k: list(v) for k, v in responses.items()}
        self.calls = []

    def __getattr__(self, operation):
        if operation not in self.responses:
            raise AttributeError(operation)

        def call(**params):
            self.calls.append((operation, params))
            queue = self.responses[operation]
            resp = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(resp, Exception):
                raise resp
            return resp

        return call

    def called(self, operation):
        return [p for op, p in self.calls if op == operation]


def make_service(client, tmp_path: Path, sleeps=None):
    store = FakeStore(tmp_path)
    return ReviewService(
        client, store, region="eu-west-1", account_id="111122223333", poll_seconds=7,
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
    )


def _meta(before=None, after=None, build_key=None) -> ScanMetadata:
    return ScanMetadata(
        bucket_name="codeguru-reviewer-test",
        repository_root=Path("/work/project"),
        source_directories=[Path("/work/project")],
        source_key="analysis-src-1.zip",
        build_key=build_key,
        before_commit=before,
        after_commit=after,
    )


def _assoc(state="Associated", **extra):
    return {"RepositoryAssociation": dict(ASSOCIATION, State=state, **extra)}


def test_existing_association_is_reused(tmp_path: Path):
    client = FakeClient(
        list_repository_associations=[{"RepositoryAssociationSummaries": [{"AssociationArn": "arn:a"}]}],
        describe_repository_association=[_assoc()],
    )
    service = make_service(client, tmp_path)

    assoc = service.get_association("project", None, None, lambda q: pytest.fail("no prompt expected"))

    assert assoc["AssociationArn"] == ASSOCIATION["AssociationArn"]
    assert client.called("list_repository_associations") == [{"ProviderTypes": ["S3Bucket"], "Names": ["project"]}]


def test_more_than_one_association_is_an_error(tmp_path: Path):
    client = FakeClient(list_repository_associations=[
        {"RepositoryAssociationSummaries": [{"AssociationArn": "arn:a"}, {"AssociationArn": "arn:b"}]}
    ])
    with pytest.raises(ServiceError) as exc:
        make_service(client, tmp_path).get_association("project", None, None, lambda q: True)
    assert "arn:b" in str(exc.value)


def test_association_in_bad_state(tmp_path: Path):
    client = FakeClient(
        list_repository_associations=[{"RepositoryAssociationSummaries": [{"AssociationArn": "arn:a"}]}],
        describe_repository_association=[_assoc("Failed", StateReason="broken")],
    )
    with pytest.raises(ServiceError) as exc:
        make_service(client, tmp_path).get_association("project", None, None, lambda q: True)
    assert "broken" in str(exc.value)


def test_association_with_other_kms_key(tmp_path: Path):
    client = FakeClient(
        list_repository_associations=[{"RepositoryAssociationSummaries": [{"AssociationArn": "arn:a"}]}],
        describe_repository_association=[_assoc(KMSKeyDetails={"KMSKeyId": "key-1"})],
    )
    with pytest.raises(ServiceError):
        make_service(client, tmp_path).get_association("project", None, "key-2", lambda q: True)


def test_new_association_creates_bucket_after_confirmation(tmp_path: Path):
    sleeps = []
    client = FakeClient(
        list_repository_associations=[{"RepositoryAssociationSummaries": []}],
        associate_repository=[{"RepositoryAssociation": {"AssociationArn": "arn:new"}}],
        describe_repository_association=[_assoc("Associating"), _assoc("Associated")],
    )
    service = make_service(client, tmp_path, sleeps)
    questions = []

    assoc = service.get_association("project", None, "key-1", lambda q: questions.append(q) or True)

    bucket = "codeguru-reviewer-cli-111122223333-eu-west-1"
    assert assoc["State"] == "Associated"
    assert service.store.buckets == {bucket}
    assert bucket in questions[0]
    params = client.called("associate_repository")[0]
    assert params["Repository"] == {"S3Bucket": {"Name": "project", "BucketName": bucket}}
    assert params["KMSKeyDetails"] == {"KMSKeyId": "key-1", "EncryptionOption": "CUSTOMER_MANAGED_CMK"}
    assert sleeps == [1.0]


def test_new_association_declined(tmp_path: Path):
    client = FakeClient(list_repository_associations=[{"RepositoryAssociationSummaries": []}])
    service = make_service(client, tmp_path)

    assert service.get_association("project", None, None, lambda q: False) is None
    assert service.store.buckets == set()
    assert client.called("associate_repository") == []


def test_new_association_with_existing_bucket_does_not_prompt(tmp_path: Path):
    client = FakeClient(
        list_repository_associations=[{"RepositoryAssociationSummaries": []}],
        associate_repository=[{"RepositoryAssociation": {"AssociationArn": "arn:new"}}],
        describe_repository_association=[_assoc()],
    )
    service = make_service(client, tmp_path)
    service.store.buckets.add("codeguru-reviewer-mine")

    service.get_association("project", "codeguru-reviewer-mine", None, lambda q: pytest.fail("no prompt expected"))

    assert "KMSKeyDetails" not in client.called("associate_repository")[0]


def test_new_association_rejects_bucket_name(tmp_path: Path):
    client = FakeClient(list_repository_associations=[{"RepositoryAssociationSummaries": []}])
    with pytest.raises(BadBucketName):
        make_service(client, tmp_path).get_association("project", "my-bucket", None, lambda q: True)


def test_client_errors_become_service_errors(tmp_path: Path):
    client = FakeClient(list_repository_associations=[client_error()])
    with pytest.raises(ServiceError) as exc:
        make_service(client, tmp_path).get_association("project", None, None, lambda q: True)
    assert "list_repository_associations" in str(exc.value)


def test_full_tree_review_request():
    handle = RepositoryHandle(Path("/work/project"))
    request = build_review_request(ASSOCIATION, _meta(), handle)

    assert request["Name"].startswith("codeguru-reviewer-cli-")
    assert request["RepositoryAssociationArn"] == ASSOCIATION["AssociationArn"]
    assert request["Type"]["AnalysisTypes"] == ["CodeQuality"]
    source = request["Type"]["RepositoryAnalysis"]["SourceCodeType"]
    assert source["S3BucketRepository"]["Details"] == {
        "BucketName": "codeguru-reviewer-test",
        "CodeArtifacts": {"SourceCodeArtifactsObjectKey": "analysis-src-1.zip"},
    }
    assert source["RepositoryHead"] == {"BranchName": "unknown"}
    assert source["RequestMetadata"]["Requester"] == "nobody"
    assert source["RequestMetadata"]["EventInfo"] == {"Name": "schedule"}
    assert "CommitDiff" not in source


def test_diff_review_request_with_build_artifacts():
    handle = RepositoryHandle(Path("/work/project"), branch="main", user_name="dev@example.com")
    request = build_review_request(ASSOCIATION, _meta("a" * 40, "b" * 40, "analysis-bin-1.zip"), handle)

    assert request["Type"]["AnalysisTypes"] == ["Security", "CodeQuality"]
    source = request["Type"]["RepositoryAnalysis"]["SourceCodeType"]
    assert source["S3BucketRepository"]["Details"]["CodeArtifacts"]["BuildArtifactsObjectKey"] == "analysis-bin-1.zip"
    assert source["CommitDiff"] == {"SourceCommit": "b" * 40, "DestinationCommit": "a" * 40}
    assert source["RepositoryHead"] == {"BranchName": "main"}
    assert source["RequestMetadata"]["EventInfo"] == {"Name": "push"}


def test_start_review_records_arns(tmp_path: Path):
    client = FakeClient(create_code_review=[{"CodeReview": {"CodeReviewArn": "arn:review"}}])
    service = make_service(client, tmp_path)

    meta = service.start_review(ASSOCIATION, _meta(), RepositoryHandle(Path("/work/project")))

    assert meta.code_review_arn == "arn:review"
    assert meta.association_arn == ASSOCIATION["AssociationArn"]
    assert meta.region == "eu-west-1"
    assert "arn:review" in service.review_url("arn:review")


def test_wait_for_review_polls_then_pages_findings(tmp_path: Path):
    sleeps = []
    rec = {"FilePath": "a.py", "StartLine": 1, "EndLine": 1, "Description": "d", "RuleMetadata": {"RuleId": "r"}}
    client = FakeClient(
        describe_code_review=[
            {"CodeReview": {"State": "Pending"}},
            {"CodeReview": {"State": "Pending"}},
            {"CodeReview": {"State": "Completed"}},
        ],
        list_recommendations=[
            {"RecommendationSummaries": [dict(rec, RecommendationId="1")], "NextToken": "t1"},
            {"RecommendationSummaries": [dict(rec, RecommendationId="2")]},
        ],
    )

    found = make_service(client, tmp_path, sleeps).wait_for_review("arn:review")

    assert [f.id for f in found] == ["1", "2"]
    assert sleeps == [7, 7]
    assert client.called("list_recommendations")[1] == {"CodeReviewArn": "arn:review", "NextToken": "t1"}


@pytest.mark.parametrize("state", ["Failed", "Deleting"])
def test_wait_for_review_stops_on_terminal_state(tmp_path: Path, state):
    client = FakeClient(describe_code_review=[{"CodeReview": {"State": state, "StateReason": "why"}}])
    with pytest.raises(ServiceError) as exc:
        make_service(client, tmp_path).wait_for_review("arn:review")
    assert "why" in str(exc.value)


def test_cleanup_deletes_both_archives(tmp_path: Path):
    service = make_service(FakeClient(), tmp_path)
    service.cleanup(_meta(build_key="analysis-bin-1.zip"))
    assert service.store.deleted == [
        ("codeguru-reviewer-test", "analysis-src-1.zip"),
        ("codeguru-reviewer-test", "analysis-bin-1.zip"),
    ]
