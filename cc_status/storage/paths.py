"""
Transcript location discovery.

Resolves the assistant's data directories and the transcript files below them.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "CLAUDE_CONFIG_DIR"
TRANSCRIPT_SUFFIX = ".jsonl"


def get_claude_paths(env: Optional[Mapping[str, str]] = None) -> List[Path]:
    """Return the data directories to scan for transcripts.

    ``CLAUDE_CONFIG_DIR`` may hold a comma-separated list; only entries that
    exist are kept. Without it, the first existing of ``~/.config/claude``
    and ``~/.claude`` is used.

    Args:
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Existing data directories, possibly empty
    """
    env = os.environ if env is None else env
    paths: List[Path] = []

    override = env.get(CONFIG_DIR_ENV, "").strip()
    if override:
        for raw in override.split(","):
            raw = raw.strip()
            if not raw:
                continue
            path = Path(raw).expanduser()
            if path.is_dir():
                paths.append(path)
            else:
                logger.debug("Skipping missing data directory %s", path)

    if paths:
        return paths

    home = Path.home()
    for candidate in (home / ".config" / "claude", home / ".claude"):
        if candidate.is_dir():
            return [candidate]
    return []


def find_transcript_files(
    roots: Iterable[Path],
    modified_since: Optional[datetime] = None,
) -> List[Path]:
    """Recursively find transcript files under the given roots.

    Each root is searched below its ``projects`` directory when it has one,
    otherwise the root itself is searched. Missing or unreadable paths are
    skipped.

    Args:
        roots: Data directories to search
        modified_since: Only keep files modified at or after this instant

    Returns:
        Sorted, unique transcript paths
    """
    cutoff = modified_since.timestamp() if modified_since is not None else None
    found = set()

    for root in roots:
        root = Path(root)
        search_dir = root / "projects" if (root / "projects").is_dir() else root
        if not search_dir.is_dir():
            logger.debug("Skipping missing transcript root %s", search_dir)
            continue
        try:
            candidates = list(search_dir.rglob(f"*{TRANSCRIPT_SUFFIX}"))
        except OSError as e:
            logger.debug("Failed to scan %s: %s", search_dir, e)
            continue

        for path in candidates:
            try:
                if not path.is_file():
                    continue
                if cutoff is not None and path.stat().st_mtime < cutoff:
                    continue
            except OSError as e:
                logger.debug("Failed to stat transcript %s: %s", path, e)
                continue
            found.add(path.resolve())

    return sorted(found)
