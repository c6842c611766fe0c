"""
Utility functions for video2text.
"""

import logging
import re
import shutil
import subprocess
import sys
from typing import List, Optional

from .errors import ClipboardUnavailable

logger = logging.getLogger(__name__)

# A pasted link sometimes arrives with its scheme doubled, e.g. "https://https://host/...".
DOUBLED_SCHEME_PATTERN = re.compile(r'https?://(https?://\S+)')

CLIPBOARD_COMMANDS = [
    ['pbcopy'],
    ['wl-copy'],
    ['xclip', '-selection', 'clipboard'],
    ['xsel', '--clipboard', '--input'],
    ['clip'],
]


def extract_real_url(text: str) -> str:
    """
    Recover the real URL from pasted input.

    Args:
        text: URL as entered by the user

    Returns:
        The inner URL if the scheme was doubled, otherwise the stripped input
    """
    text = text.strip()
    match = DOUBLED_SCHEME_PATTERN.search(text)
    if match:
        return match.group(1)
    return text


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename by removing invalid characters.

    Args:
        filename: Original filename

    Returns:
        Sanitized filename
    """
    sanitized = re.sub(r'[<>:"/\\|?*]', '_', filename)
    sanitized = re.sub(r'_+', '_', sanitized)
    sanitized = sanitized.strip('_ ')

    if not sanitized:
        sanitized = "unnamed"

    return sanitized


def _clipboard_commands() -> List[List[str]]:
    if sys.platform == 'darwin':
        return [CLIPBOARD_COMMANDS[0]]
    if sys.platform.startswith('win'):
        return [CLIPBOARD_COMMANDS[-1]]
    return CLIPBOARD_COMMANDS[1:-1]


def copy_to_clipboard(text: str, commands: Optional[List[List[str]]] = None):
    """
    Copy text to the system clipboard using the platform's clipboard tool.

    Raises:
        ClipboardUnavailable: If no clipboard tool is installed or all of them failed
    """
    last_error = None
    for cmd in commands or _clipboard_commands():
        if not shutil.which(cmd[0]):
            continue
        try:
            subprocess.run(cmd, input=text.encode('utf-8'), check=True, capture_output=True, timeout=5)
            return
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.debug(f"Clipboard command {cmd[0]} failed: {e}")
            last_error = e

    raise ClipboardUnavailable(f"No usable clipboard tool: {last_error or 'none installed'}")
