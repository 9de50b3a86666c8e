import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx
import yaml

from .config import find_ignore_file
from .models import Finding, ScanMetadata


logger = logging.getLogger(__name__)

SEVERITY_RANK = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3}
UNKNOWN_SEVERITY_RANK = 5


def severity_rank(severity: Optional[str]) -> int:
    """Lower is more severe."""
    return SEVERITY_RANK.get((severity or "").upper(), UNKNOWN_SEVERITY_RANK)


@dataclass
class ExcludeRecommendation:
    detector_id: str
    locations: List[str] = field(default_factory=list)


@dataclass
class IgnoreConfig:
    version: str = "1.0"
    exclude_files: List[str] = field(default_factory=list)
    exclude_below_severity: Optional[str] = None
    exclude_tags: List[str] = field(default_factory=list)
    exclude_by_id: List[str] = field(default_factory=list)
    exclude_recommendations: List[ExcludeRecommendation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IgnoreConfig":
        # keys are matched case-insensitively
        data = {str(k).lower(): v for k, v in (data or {}).items()}
        excludes = []
        for item in data.get("excluderecommendations") or []:
            item = {str(k).lower(): v for k, v in (item or {}).items()}
            if item.get("detectorid"):
                excludes.append(ExcludeRecommendation(str(item["detectorid"]), list(item.get("locations") or [])))
        return cls(
            version=str(data.get("version", "1.0")),
            exclude_files=list(data.get("excludefiles") or []),
            exclude_below_severity=data.get("excludebelowseverity"),
            exclude_tags=list(data.get("excludetags") or []),
            exclude_by_id=[str(i) for i in data.get("excludebyid") or []],
            exclude_recommendations=excludes,
        )


def load_ignore_config(path: Path) -> Optional[IgnoreConfig]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as e:
        logger.error("Failed to parse %s: %s", path, e)
        return None
    if data is not None and not isinstance(data, dict):
        logger.error("Failed to parse %s: expected a mapping at the top level", path)
        return None
    return IgnoreConfig.from_dict(data or {})


def glob_to_regex(pattern: str) -> str:
    """Translate a path glob to a regex.

    ``*`` and ``?`` never cross a ``/``, ``**`` does, ``[!...]`` negates a
    class and ``{a,b}`` is an alternation.
    """
    out: List[str] = []
    i, n = 0, len(pattern)
    in_group = False
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[" and pattern.find("]", i + 1) != -1:
            end = pattern.find("]", i + 1)
            body = pattern[i + 1:end].replace("\\", "\\\\")
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = end + 1
            continue
        elif c == "{" and not in_group:
            out.append("(?:")
            in_group = True
        elif c == "}" and in_group:
            out.append(")")
            in_group = False
        elif c == "," and in_group:
            out.append("|")
        elif c == "\\" and i + 1 < n:
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out) + r"\Z"


def _matches(file_path: str, patterns: Iterable[str]) -> bool:
    return any(re.match(glob_to_regex(pat), file_path, re.DOTALL) for pat in patterns)


def _excluded_by_detector(finding: Finding, config: IgnoreConfig) -> bool:
    for ex in config.exclude_recommendations:
        if ex.detector_id != finding.rule_id:
            continue
        if not ex.locations or _matches(finding.file_path, ex.locations):
            return True
    return False


def filter_findings(findings: Iterable[Finding], config: IgnoreConfig) -> List[Finding]:
    threshold = severity_rank(config.exclude_below_severity) if config.exclude_below_severity else None
    kept: List[Finding] = []
    for f in findings:
        if threshold is not None and severity_rank(f.severity) > threshold:
            continue
        if f.id is not None and f.id in config.exclude_by_id:
            continue
        if _matches(f.file_path, config.exclude_files):
            continue
        if f.rule_id is None:
            # findings without rule metadata are always dropped
            continue
        if f.tags and any(t in f.tags for t in config.exclude_tags):
            continue
        if _excluded_by_detector(f, config):
            continue
        kept.append(f)
    return kept


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    return sorted(findings, key=lambda f: (f.file_path, f.line or 0))


def apply_ignore_file(findings: List[Finding], repository_root: Path) -> List[Finding]:
    ignore_file = find_ignore_file(Path(repository_root))
    if ignore_file is None:
        return findings
    logger.info("Using customer provided config: %s", ignore_file)
    config = load_ignore_config(ignore_file)
    if config is None:
        return findings
    kept = filter_findings(findings, config)
    logger.info("%d recommendations were suppressed.", len(findings) - len(kept))
    return kept


def scan_document(metadata: ScanMetadata, findings: List[Finding]) -> Dict[str, Any]:
    has_diff = metadata.before_commit is not None and metadata.after_commit is not None
    return {
        "project_path": str(metadata.repository_root),
        "generated_at": int(time.time()),
        "scan_type": "diff" if has_diff else "full",
        **({"base_sha": metadata.before_commit, "head_sha": metadata.after_commit} if has_diff else {}),
        "code_review_arn": metadata.code_review_arn,
        "association_arn": metadata.association_arn,
        "region": metadata.region,
        "findings": [asdict(f) for f in findings],
    }


def save_findings(output_dir: Path, findings: List[Finding]) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    json_file = output_dir / "recommendations.json"
    json_file.write_text(json.dumps([asdict(f) for f in findings], indent=2), encoding="utf-8")
    logger.info("Recommendations in Json format written to: %s", json_file.resolve().as_uri())
    return json_file


def post_findings(base_url: str, document: Dict[str, Any], project_name: str) -> Optional[int]:
    """Send the scan document to a findings console's ingest endpoint."""
    payload = dict(document)
    payload["project_name"] = project_name
    url = base_url.rstrip("/") + "/api/ingest"
    try:
        r = httpx.post(url, json=payload, timeout=60)
    except httpx.HTTPError as e:
        logger.warning("POST %s failed: %s", url, e)
        return None
    logger.info("POST %s -> %s", url, r.status_code)
    return r.status_code


def postprocess(findings: List[Finding], metadata: ScanMetadata, output_dir: Path) -> List[Finding]:
    """Filter through the repository's ignore file, order by location and save to ``output_dir``."""
    kept = sort_findings(apply_ignore_file(findings, metadata.repository_root))
    save_findings(output_dir, kept)
    return kept


def log_findings(findings: Iterable[Finding]) -> None:
    for f in sorted(findings, key=lambda f: severity_rank(f.severity)):
        msg = (
            f"ID: {f.id}, rule {f.rule_id} with severity {f.severity}\n"
            f"In {f.file_path} line {f.line}\n{f.description}"
        )
        rank = severity_rank(f.severity)
        if rank < 2:
            logger.error(msg)
        elif rank == 2:
            logger.warning(msg)
        else:
            logger.info(msg)
