"""
Git working tree status for the status line.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 0.5


@dataclass(frozen=True)
class GitInfo:
    branch: str
    status: str  # "clean", "dirty" or "conflicts"
    ahead: int = 0
    behind: int = 0


def _git(cwd: str, args: List[str], timeout: float) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", "-C", cwd, *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug("git %s failed: %s", " ".join(args), e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def get_git_info(cwd: str, timeout: float = GIT_TIMEOUT_SECONDS) -> Optional[GitInfo]:
    """Branch, cleanliness and upstream divergence of ``cwd``, or None outside a repo."""
    output = _git(cwd, ["status", "--porcelain=v2", "--branch"], timeout)
    if output is None:
        return None

    branch = None
    ahead = behind = 0
    status = "clean"

    for line in output.splitlines():
        if line.startswith("# branch.head "):
            branch = line[len("# branch.head "):].strip()
        elif line.startswith("# branch.ab "):
            parts = line.split()
            try:
                ahead = int(parts[2].lstrip("+"))
                behind = int(parts[3].lstrip("-"))
            except (IndexError, ValueError):
                pass
        elif line.startswith("u "):
            status = "conflicts"
        elif line and not line.startswith("#") and status != "conflicts":
            status = "dirty"

    if not branch:
        return None
    if branch == "(detached)":
        branch = "detached"

    return GitInfo(branch=branch, status=status, ahead=ahead, behind=behind)
