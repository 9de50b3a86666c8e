import json
import logging
from pathlib import Path
from typing import Optional

from .config import STATE_FILE_NAME
from .models import ScanMetadata


logger = logging.getLogger(__name__)


def state_path(output_dir: Path) -> Path:
    return output_dir / STATE_FILE_NAME


def save_state(output_dir: Path, metadata: ScanMetadata) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = state_path(output_dir)
    path.write_text(json.dumps(metadata.to_dict(), indent=2), encoding="utf-8")
    logger.debug("Saved scan metadata to %s", path)
    return path


def load_state(output_dir: Path) -> Optional[ScanMetadata]:
    """The metadata of the last started review, or None if there is none usable."""
    path = state_path(output_dir)
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ScanMetadata.from_dict(data)
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Ignoring unreadable scan metadata %s: %s", path, e)
        return None
