"""Client for the remote code review service (Amazon CodeGuru Reviewer)."""

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, ProfileNotFound

from .config import BUCKET_PREFIX
from .errors import BadBucketName, CredentialsError, ServiceError
from .log import progress
from .models import Finding, RepositoryHandle, ScanMetadata
from .storage import S3ObjectStore


logger = logging.getLogger(__name__)

SCAN_PREFIX_NAME = "codeguru-reviewer-cli-"
BUCKET_NAME_PATTERN = "codeguru-reviewer-cli-{account}-{region}"
CONSOLE_URL = "https://console.aws.amazon.com/codeguru/reviewer"
ASSOCIATION_WAIT_SECONDS = 1.0

Confirm = Callable[[str], bool]


def connect(region: str, profile: Optional[str] = None, poll_seconds: float = 2.0) -> "ReviewService":
    """Build the service, storage and identity clients from the default or a named credentials profile."""
    try:
        session = boto3.Session(profile_name=profile, region_name=region)
        account_id = session.client("sts").get_caller_identity()["Account"]
    except ProfileNotFound as e:
        raise CredentialsError(
            f"error accessing the provided profile {profile}. Ensure that the spelling is correct "
            "and that the role has access to CodeGuru and S3."
        ) from e
    except NoCredentialsError as e:
        raise CredentialsError("no AWS credentials found. Use 'aws configure' to set them up.") from e
    except (BotoCoreError, ClientError) as e:
        raise CredentialsError(f"cannot verify AWS credentials in {region}: {e}") from e
    return ReviewService(
        client=session.client("codeguru-reviewer", region_name=region),
        store=S3ObjectStore(session.client("s3", region_name=region), expected_owner=account_id),
        region=region,
        account_id=account_id,
        poll_seconds=poll_seconds,
    )


class ReviewService:
    def __init__(
        self,
        client,
        store,
        region: str,
        account_id: Optional[str] = None,
        poll_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.store = store
        self.region = region
        self.account_id = account_id
        self.poll_seconds = poll_seconds
        self.sleep = sleep

    def _call(self, operation: str, **params) -> Dict[str, Any]:
        try:
            return getattr(self.client, operation)(**params)
        except (BotoCoreError, ClientError) as e:
            raise ServiceError(f"{operation} failed: {e}") from e

    def review_url(self, code_review_arn: str) -> str:
        return f"{CONSOLE_URL}?region={self.region}#/codereviews/details/{code_review_arn}"

    # Repository association

    def get_association(
        self,
        repo_name: str,
        bucket_name: Optional[str],
        kms_key_id: Optional[str],
        confirm: Confirm,
    ) -> Optional[Dict[str, Any]]:
        """Find or create the association for ``repo_name``; None if the user declined."""
        resp = self._call("list_repository_associations", ProviderTypes=["S3Bucket"], Names=[repo_name])
        summaries = resp.get("RepositoryAssociationSummaries", [])
        if len(summaries) > 1:
            arns = [s.get("AssociationArn") for s in summaries]
            raise ServiceError(f"found more than one matching association for {repo_name}: {arns}")
        if not summaries:
            return self._create_association(repo_name, bucket_name, kms_key_id, confirm)

        arn = summaries[0]["AssociationArn"]
        association = self._call("describe_repository_association", AssociationArn=arn)["RepositoryAssociation"]
        if association.get("State") != "Associated":
            raise ServiceError(
                f"repository association {arn} in unexpected state {association.get('State')}: "
                f"{association.get('StateReason')}"
            )
        existing_key = (association.get("KMSKeyDetails") or {}).get("KMSKeyId")
        if kms_key_id is not None and kms_key_id != existing_key:
            raise ServiceError(
                f"provided KMS key {kms_key_id} for repository {association.get('Name')} "
                f"does not match existing key: {existing_key}"
            )
        return association

    def _choose_bucket(self, bucket_name: Optional[str]) -> str:
        if bucket_name is None:
            return BUCKET_NAME_PATTERN.format(account=self.account_id, region=self.region)
        if not bucket_name.startswith(BUCKET_PREFIX):
            raise BadBucketName(f"{bucket_name} is not a valid bucket name for CodeGuru Reviewer")
        return bucket_name

    def _create_association(
        self,
        repo_name: str,
        bucket_name: Optional[str],
        kms_key_id: Optional[str],
        confirm: Confirm,
    ) -> Optional[Dict[str, Any]]:
        bucket = self._choose_bucket(bucket_name)
        if not self.store.bucket_exists(bucket):
            logger.info("CodeGuru Reviewer requires an S3 bucket to upload the analysis artifacts to.")
            if not confirm(f"Do you want to create a new S3 bucket: {bucket}?"):
                return None
            logger.info("Creating new bucket: %s", bucket)
            self.store.create_bucket(bucket, self.region)

        params: Dict[str, Any] = {"Repository": {"S3Bucket": {"Name": repo_name, "BucketName": bucket}}}
        if kms_key_id is not None:
            params["KMSKeyDetails"] = {"KMSKeyId": kms_key_id, "EncryptionOption": "CUSTOMER_MANAGED_CMK"}
        arn = self._call("associate_repository", **params)["RepositoryAssociation"]["AssociationArn"]

        logger.info("Creating association %s", arn)
        while True:
            association = self._call("describe_repository_association", AssociationArn=arn)["RepositoryAssociation"]
            state = association.get("State")
            if state == "Associated":
                logger.info("Created new repository association: %s", arn)
                return association
            if state != "Associating":
                raise ServiceError(
                    f"repository association {arn} in unexpected state {state}: {association.get('StateReason')}"
                )
            progress()
            self.sleep(ASSOCIATION_WAIT_SECONDS)

    # Code reviews

    def start_review(
        self,
        association: Dict[str, Any],
        metadata: ScanMetadata,
        handle: RepositoryHandle,
    ) -> ScanMetadata:
        """Start a review of the uploaded artifacts and record its ids on ``metadata``."""
        request = build_review_request(association, metadata, handle)
        resp = self._call("create_code_review", **request)
        review_arn = resp["CodeReview"]["CodeReviewArn"]
        logger.info("Started new CodeGuru Reviewer scan: %s", self.review_url(review_arn))
        metadata.code_review_arn = review_arn
        metadata.association_arn = association["AssociationArn"]
        metadata.region = self.region
        return metadata

    def wait_for_review(self, code_review_arn: str) -> List[Finding]:
        """Poll at a fixed interval until the review leaves ``Pending``, then list its findings."""
        while True:
            review = self._call("describe_code_review", CodeReviewArn=code_review_arn).get("CodeReview") or {}
            state = review.get("State")
            if state == "Completed":
                progress(":)\n")
                return self.list_findings(code_review_arn)
            if state == "Pending":
                progress()
                self.sleep(self.poll_seconds)
                continue
            if state == "Failed":
                raise ServiceError(
                    f"code review {code_review_arn} failed: {review.get('StateReason')}. "
                    "Check the AWS Console for more detail"
                )
            raise ServiceError(
                f"code review {code_review_arn} is in an unexpected state {state}: {review.get('StateReason')}"
            )

    def list_findings(self, code_review_arn: str) -> List[Finding]:
        findings: List[Finding] = []
        params: Dict[str, Any] = {"CodeReviewArn": code_review_arn}
        while True:
            page = self._call("list_recommendations", **params)
            findings.extend(Finding.from_summary(s) for s in page.get("RecommendationSummaries", []))
            token = page.get("NextToken")
            if not token:
                return findings
            params["NextToken"] = token

    def cleanup(self, metadata: ScanMetadata) -> None:
        self.store.delete(metadata.bucket_name, metadata.source_key)
        self.store.delete(metadata.bucket_name, metadata.build_key)


def build_review_request(
    association: Dict[str, Any],
    metadata: ScanMetadata,
    handle: RepositoryHandle,
) -> Dict[str, Any]:
    artifacts = {"SourceCodeArtifactsObjectKey": metadata.source_key}
    analysis_types = ["CodeQuality"]
    if metadata.build_key:
        artifacts["BuildArtifactsObjectKey"] = metadata.build_key
        analysis_types = ["Security", "CodeQuality"]

    bucket = (association.get("S3RepositoryDetails") or {}).get("BucketName") or metadata.bucket_name
    has_diff = metadata.before_commit is not None and metadata.after_commit is not None
    source_code: Dict[str, Any] = {
        "S3BucketRepository": {
            "Name": association.get("Name"),
            "Details": {"BucketName": bucket, "CodeArtifacts": artifacts},
        },
        "RepositoryHead": {"BranchName": handle.branch or "unknown"},
        "RequestMetadata": {
            "RequestId": "0",
            "Requester": handle.user_name or "nobody",
            "EventInfo": {"Name": "push" if has_diff else "schedule"},
            "VendorName": "GitHub",
        },
    }
    if has_diff:
        source_code["CommitDiff"] = {
            "SourceCommit": metadata.after_commit,
            "DestinationCommit": metadata.before_commit,
        }
    return {
        "Name": SCAN_PREFIX_NAME + str(uuid.uuid4()),
        "RepositoryAssociationArn": association["AssociationArn"],
        "Type": {
            "RepositoryAnalysis": {"SourceCodeType": source_code},
            "AnalysisTypes": analysis_types,
        },
    }
