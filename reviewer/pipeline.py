"""Runs one analysis end to end and reports a tagged outcome instead of raising."""

import logging
from pathlib import Path
from typing import Callable, Optional

from .errors import DirectoryNotFound, ReviewerError, ServiceError
from .findings import postprocess
from .models import ReviewRequest, RunResult, ScanMetadata, SelectionPolicy, TrackedFileSet
from .packager import check_build_dirs, check_source_dirs, package
from .revisions import list_tracked_files, open_repository, resolve_range
from .state import load_state, save_state


logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


def always_yes(question: str) -> bool:
    return True


def validate_request(request: ReviewRequest) -> None:
    """Local checks that must pass before anything is sent over the network."""
    if not request.root_dir.is_dir():
        raise DirectoryNotFound(f"{request.root_dir} is not a valid directory")
    check_source_dirs(request.root_dir, request.source_dirs)
    check_build_dirs(request.build_dirs)


def choose_policy(tracked_files: TrackedFileSet, confirm: Confirm) -> SelectionPolicy:
    if tracked_files and confirm("Only analyze files under version control?"):
        return SelectionPolicy.TRACKED_ONLY
    return SelectionPolicy.FULL_TREE


def run_review(request: ReviewRequest, connect_service: Callable[[Optional[str]], object], confirm: Confirm = always_yes) -> RunResult:
    """Resolve, package, upload, review and post-process.

    ``connect_service`` is only called once the local checks have passed.
    """
    metadata: Optional[ScanMetadata] = None
    try:
        validate_request(request)
        with open_repository(request.root_dir, allow_unmanaged=True) as handle:
            if handle.is_managed and not request.revisions.is_diff:
                logger.warning("A full repository analysis will be performed because no commit range was provided.")
                if not confirm("Do you want to perform a full repository analysis?"):
                    return RunResult.declined("Use --commit-range to set a commit range")
            revisions = resolve_range(handle, request.revisions, request.root_dir)
            tracked = list_tracked_files(handle)
            policy = choose_policy(tracked, confirm)

            service = connect_service(request.region)
            association = service.get_association(request.repo_name, request.bucket_name, request.kms_key_id, confirm)
            if association is None:
                return RunResult.declined("CodeGuru Reviewer needs an S3 bucket to continue.")
            bucket = association["S3RepositoryDetails"]["BucketName"]
            logger.info(
                "Starting analysis of %s with association %s and S3 bucket %s",
                request.root_dir, association["AssociationArn"], bucket,
            )
            metadata = package(
                request.root_dir,
                request.source_dirs,
                request.build_dirs,
                revisions,
                tracked,
                policy,
                bucket,
                service.store,
            )
            try:
                service.start_review(association, metadata, handle)
                save_state(request.output_dir, metadata)
                findings = service.wait_for_review(metadata.code_review_arn)
            finally:
                service.cleanup(metadata)

        findings = postprocess(findings, metadata, request.output_dir)
        logger.info("Analysis finished.")
        return RunResult.ok(metadata, findings)
    except ReviewerError as e:
        logger.error("%s", e)
        return RunResult.failed(e, metadata)


def fetch_results(output_dir: Path, connect_service: Callable[[Optional[str]], object]) -> RunResult:
    """Poll the review recorded by an earlier run, skipping packaging."""
    metadata = load_state(output_dir)
    try:
        if metadata is None or not metadata.code_review_arn:
            raise ServiceError(f"no started code review recorded in {output_dir}")
        service = connect_service(metadata.region)
        try:
            findings = service.wait_for_review(metadata.code_review_arn)
        finally:
            service.cleanup(metadata)
        findings = postprocess(findings, metadata, output_dir)
        return RunResult.ok(metadata, findings)
    except ReviewerError as e:
        logger.error("%s", e)
        return RunResult.failed(e, metadata)
