"""
User data migration between version directories.

Copies a version's data/ tree into another version, overwriting files that
exist at the same relative path. The copy is not transactional: if it fails
halfway the destination keeps whatever was already copied.
"""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def copy_data(source: Path, dest: Path) -> int:
    """
    Recursively copy source into dest, creating directories as needed.

    Returns the number of files copied. A missing source copies nothing.
    Raises OSError on the first failed copy.
    """
    source, dest = Path(source), Path(dest)
    if not source.is_dir():
        return 0

    copied = 0
    for dirpath, dirnames, filenames in os.walk(source):
        target_dir = dest / Path(dirpath).relative_to(source)
        target_dir.mkdir(parents=True, exist_ok=True)
        for filename in filenames:
            shutil.copy2(Path(dirpath) / filename, target_dir / filename)
            copied += 1

    logger.info(f"Copied {copied} files from {source} to {dest}")
    return copied
