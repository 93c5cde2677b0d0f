"""
Location of YAML configuration files.

Files are looked up in $CONFIG_DIR first (a private overlay, e.g. a
mounted secrets volume) and then in the repository's config/ directory.
In each directory a missing `name.yaml` falls back to the shipped
`name.example.yaml`.
"""
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
BUNDLED_CONFIG_DIR = REPO_ROOT / "config"


def _search_dirs() -> Iterator[Path]:
    overlay = os.getenv("CONFIG_DIR")
    if overlay and Path(overlay) != BUNDLED_CONFIG_DIR:
        yield Path(overlay)
    yield BUNDLED_CONFIG_DIR


def _candidates(filename: str) -> Iterator[Path]:
    example = filename[:-len(".yaml")] + ".example.yaml" if filename.endswith(".yaml") else None
    for directory in _search_dirs():
        yield directory / filename
        if example and not filename.endswith(".example.yaml"):
            yield directory / example


def get_config_path(filename: str, required: bool = False) -> Optional[Path]:
    """
    First existing candidate for `filename`, or None.

    Raises:
        FileNotFoundError: required=True and no candidate exists
    """
    searched = []
    for path in _candidates(filename):
        if path.exists():
            logger.debug(f"Using {path} for {filename}")
            return path
        searched.append(str(path))

    if required:
        raise FileNotFoundError(f"No config file for '{filename}' (searched: {', '.join(searched)})")
    logger.debug(f"No config file for '{filename}'")
    return None
