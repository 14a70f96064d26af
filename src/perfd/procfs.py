"""Readers for kernel-exposed text files and whitespace-delimited records.

Everything under /proc is read whole: the files are small, generated on
each open, and may disappear at any moment (a process exits between two
reads). Read failures are reported as None, never raised.
"""

from pathlib import Path


def read_file(path: Path | str) -> str | None:
    """Read a whole pseudo-file.

    Args:
        path: File to read (e.g. /proc/stat)

    Returns:
        File contents, or None if the file cannot be read.
    """
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError:
        return None


def read_lines(path: Path | str) -> list[str] | None:
    """Read a pseudo-file and split it into lines (without line endings)."""
    content = read_file(path)
    if content is None:
        return None
    return content.splitlines()


def find_token_start(line: str, index: int, start: int = 0) -> int | None:
    """Return the offset of the index-th whitespace-delimited token.

    Tokens are counted from ``start``; leading whitespace is skipped.

    Args:
        line: Record to scan
        index: 0-based token number
        start: Offset in ``line`` where counting begins

    Returns:
        Offset of the token's first character, or None if the line has
        fewer than ``index + 1`` tokens.
    """
    if index < 0:
        return None

    pos = start
    length = len(line)
    current = -1
    while pos < length:
        while pos < length and line[pos].isspace():
            pos += 1
        if pos >= length:
            break
        current += 1
        if current == index:
            return pos
        while pos < length and not line[pos].isspace():
            pos += 1
    return None


def token_at(line: str, index: int, start: int = 0) -> str | None:
    """Return the index-th whitespace-delimited token, or None."""
    begin = find_token_start(line, index, start)
    if begin is None:
        return None
    end = begin
    while end < len(line) and not line[end].isspace():
        end += 1
    return line[begin:end]


def token_equals(line: str, index: int, expected: str, start: int = 0) -> bool:
    """Check whether the index-th token is exactly ``expected``."""
    begin = find_token_start(line, index, start)
    if begin is None:
        return False
    end = begin + len(expected)
    if line[begin:end] != expected:
        return False
    # Token must end right after the expected text
    return end == len(line) or line[end].isspace()


def int_token(line: str, index: int, start: int = 0) -> int | None:
    """Return the index-th token parsed as a base-10 integer, or None."""
    token = token_at(line, index, start)
    if token is None:
        return None
    try:
        return int(token)
    except ValueError:
        return None
