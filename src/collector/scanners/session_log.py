"""Session transcript (JSONL) parsing."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


@dataclass
class ParsedEntry:
    """One transcript line that decoded to a JSON object."""

    line_number: int
    data: Dict[str, Any]

    @property
    def type(self) -> str:
        value = self.data.get("type")
        return value if isinstance(value, str) and value else "unknown"

    @property
    def uuid(self) -> Optional[str]:
        return _optional_str(self.data.get("uuid"))

    @property
    def subtype(self) -> Optional[str]:
        return _optional_str(self.data.get("subtype"))

    @property
    def timestamp(self) -> Optional[str]:
        return _optional_str(self.data.get("timestamp"))

    @property
    def session_id(self) -> Optional[str]:
        return _optional_str(self.data.get("sessionId"))


@dataclass
class LineError:
    """A transcript line that could not be decoded."""

    line_number: int
    error: str


@dataclass
class ParseResult:
    """Entries and per-line errors of one transcript file."""

    entries: List[ParsedEntry] = field(default_factory=list)
    errors: List[LineError] = field(default_factory=list)


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def parse_jsonl(content: str) -> ParseResult:
    """Parse transcript content.

    Blank lines are ignored and do not consume a line number, so line numbers
    stay stable while the file is appended to. Undecodable lines and lines
    that are not JSON objects are reported in ``errors`` and skipped.
    """
    result = ParseResult()
    line_number = 0

    for raw_line in content.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        line_number += 1

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            result.errors.append(LineError(line_number, f"Invalid JSON: {e.msg}"))
            continue

        if not isinstance(data, dict):
            result.errors.append(
                LineError(line_number, f"Expected a JSON object, got {type(data).__name__}")
            )
            continue

        result.entries.append(ParsedEntry(line_number=line_number, data=data))

    return result


def parse_jsonl_file(path: Union[str, Path]) -> ParseResult:
    """Read and parse a transcript file."""
    content = Path(path).read_text(encoding="utf-8", errors="replace")
    return parse_jsonl(content)


def read_leading_entries(path: Union[str, Path], max_lines: int) -> List[ParsedEntry]:
    """Parse at most ``max_lines`` non-blank lines from the start of a file."""
    entries: List[ParsedEntry] = []
    line_number = 0

    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line:
                continue
            line_number += 1
            if line_number > max_lines:
                break
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                entries.append(ParsedEntry(line_number=line_number, data=data))

    return entries
