import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from .config import BUCKET_PREFIX, Settings, load_settings
from .errors import ReviewerError
from .findings import log_findings, post_findings, scan_document
from .log import setup_logging
from .models import Outcome, ReviewRequest, RevisionRange, RunResult
from .pipeline import always_yes, fetch_results, run_review


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 2
EXIT_FAILED = 3
EXIT_DECLINED = 4
EXIT_FINDINGS = 5


def prompt_yes_no(question: str) -> bool:
    while True:
        sys.stderr.write(f"{question} [y/n]: ")
        sys.stderr.flush()
        answer = sys.stdin.readline()
        if not answer:
            return False
        answer = answer.strip().lower()
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False


def build_request(args: argparse.Namespace, settings: Settings) -> ReviewRequest:
    root = Path(args.root_dir).expanduser().absolute()
    sources = args.src or [str(root)]
    return ReviewRequest(
        root_dir=root,
        source_dirs=tuple(Path(s).expanduser().absolute() for s in sources),
        build_dirs=tuple(Path(b).expanduser().absolute() for b in (args.build or [])),
        revisions=RevisionRange.parse(args.commit_range),
        region=args.region or settings.region,
        profile=args.profile or settings.profile,
        bucket_name=args.bucket_name or settings.bucket_name,
        kms_key_id=args.kms_key_id or settings.kms_key_id,
        output_dir=Path(args.output) if args.output else settings.output_dir,
        poll_seconds=settings.poll_seconds,
    )


def _connector(profile: Optional[str], default_region: str, poll_seconds: float) -> Callable[[Optional[str]], object]:
    def connect_service(region: Optional[str]):
        # imported here so a run that fails local checks never loads the AWS SDK
        from .service import connect

        return connect(region or default_region, profile, poll_seconds)

    return connect_service


def report(result: RunResult, args: argparse.Namespace, settings: Settings) -> int:
    if result.outcome is Outcome.DECLINED:
        logger.info("Aborted: %s", result.reason)
        return EXIT_DECLINED
    if result.outcome is Outcome.FAILED:
        return EXIT_FAILED

    document = scan_document(result.metadata, result.findings)
    post_to = args.post_to or settings.console_url
    if post_to:
        post_findings(post_to, document, args.project_name or result.metadata.repository_root.name)
    print(json.dumps(document, indent=2))

    if args.fail_on_findings and result.findings:
        log_findings(result.findings)
        logger.error(
            "Exiting with code %d because %d recommendations were found and --fail-on-findings is used.",
            EXIT_FINDINGS, len(result.findings),
        )
        return EXIT_FINDINGS
    return EXIT_OK


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--region", help="Region where CodeGuru Reviewer will run (default: REVIEWER_REGION or us-east-1)")
    p.add_argument("--profile", help="Named profile to get AWS credentials from")
    p.add_argument("--output", "-o", help="Output directory (default: REVIEWER_OUTPUT_DIR or ./code-review)")
    p.add_argument("--fail-on-findings", action="store_true", help=f"Exit with code {EXIT_FINDINGS} if findings are reported")
    p.add_argument("--post-to", help="Findings console base URL (e.g., http://localhost:3000)")
    p.add_argument("--project-name", help="Project name for console ingestion")
    p.add_argument("--verbose", action="store_true", help="Log progress details to stderr")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="reviewer", description="Package a repository and run a remote code review")
    sub = parser.add_subparsers(dest="command", required=True)

    p_scan = sub.add_parser("scan", help="Package, upload and review a repository")
    p_scan.add_argument("--root-dir", "-r", required=True, help="Root directory of the project to analyze")
    p_scan.add_argument("--src", "-s", action="append", help="Source directory to analyze. Can be used multiple times")
    p_scan.add_argument("--build", "-b", action="append", help="Directory of build artifacts. Can be used multiple times")
    p_scan.add_argument("--commit-range", "-c", help="Range of commits to analyze separated by ':', e.g. HEAD^:HEAD")
    p_scan.add_argument("--bucket-name", help=f"S3 bucket for the artifacts, must start with '{BUCKET_PREFIX}'")
    p_scan.add_argument("--kms-key-id", help="KMS key id to encrypt source and build artifacts in S3")
    p_scan.add_argument("--no-prompt", action="store_true", help="Run in non-interactive mode")
    _add_common(p_scan)

    p_fetch = sub.add_parser("fetch", help="Fetch the results of the last started review")
    _add_common(p_fetch)

    args = parser.parse_args(argv)
    settings = load_settings()
    setup_logging(settings.log_level, verbose=args.verbose)

    try:
        if args.command == "scan":
            request = build_request(args, settings)
            if request.bucket_name and not request.bucket_name.startswith(BUCKET_PREFIX):
                logger.warning(
                    "CodeGuru Reviewer has default settings only for buckets that are prefixed with %s.", BUCKET_PREFIX
                )
            confirm = always_yes if args.no_prompt else prompt_yes_no
            connect = _connector(request.profile, request.region, request.poll_seconds)
            result = run_review(request, connect, confirm)
        else:
            output_dir = Path(args.output) if args.output else settings.output_dir
            connect = _connector(args.profile or settings.profile, args.region or settings.region, settings.poll_seconds)
            result = fetch_results(output_dir, connect)
        return report(result, args, settings)
    except ReviewerError as e:
        logger.error("%s", e)
        return EXIT_FAILED
    except Exception:
        logger.exception("Unexpected error")
        return EXIT_UNEXPECTED


if __name__ == "__main__":
    raise SystemExit(main())
