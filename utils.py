"""Shared utility functions for dude-memory."""

import subprocess
from datetime import datetime
from pathlib import Path


def detect_project_name() -> str:
    """Get current project name from the git toplevel, or the cwd path.

    Examples:
        /home/me/src/dude-memory (git repo) -> dude-memory
        /tmp/scratch (no repo)              -> /tmp/scratch
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0 and result.stdout.strip():
            return Path(result.stdout.strip()).name
    except (OSError, subprocess.SubprocessError):  # git may not be available
        pass
    return str(Path.cwd())


def now_iso() -> str:
    """Get current timestamp as ISO string."""
    return datetime.now().isoformat()
