"""Settings read from the environment (and a local ``.env`` file)."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DEFAULT_REGION = "us-east-1"
DEFAULT_OUTPUT_DIR = "./code-review"
DEFAULT_POLL_SECONDS = 2.0
# first match wins
IGNORE_FILE_NAMES = (".codeguru-ignore.yml", ".reviewer-ignore.yml")
STATE_FILE_NAME = "scan-metadata.json"
BUCKET_PREFIX = "codeguru-reviewer-"


@dataclass(frozen=True)
class Settings:
    region: str = DEFAULT_REGION
    profile: Optional[str] = None
    bucket_name: Optional[str] = None
    kms_key_id: Optional[str] = None
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    poll_seconds: float = DEFAULT_POLL_SECONDS
    console_url: Optional[str] = None
    log_level: str = "INFO"


def find_ignore_file(root: Path) -> Optional[Path]:
    for name in IGNORE_FILE_NAMES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def _env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None


def load_settings(dotenv: bool = True) -> Settings:
    if dotenv:
        load_dotenv()
    poll = _env("REVIEWER_POLL_SECONDS")
    try:
        poll_seconds = float(poll) if poll else DEFAULT_POLL_SECONDS
    except ValueError:
        poll_seconds = DEFAULT_POLL_SECONDS
    return Settings(
        region=_env("REVIEWER_REGION", "AWS_REGION") or DEFAULT_REGION,
        profile=_env("REVIEWER_PROFILE", "AWS_PROFILE"),
        bucket_name=_env("REVIEWER_BUCKET"),
        kms_key_id=_env("REVIEWER_KMS_KEY_ID"),
        output_dir=Path(_env("REVIEWER_OUTPUT_DIR") or DEFAULT_OUTPUT_DIR),
        poll_seconds=max(0.0, poll_seconds),
        console_url=_env("REVIEWER_CONSOLE_URL"),
        log_level=_env("LOG_LEVEL") or "INFO",
    )
