"""Loading of tool outputs stored beside session transcripts."""

import json
from pathlib import Path
from typing import Any, Optional, Union

from ..api_clients.models import SyncToolResult
from ..utils.logging import get_logger


DEFAULT_MAX_BYTES = 1024 * 1024


class ToolResultError(Exception):
    """Raised when a tool result file exists but cannot be read or decoded."""
    pass


def _is_image_result(result: Any) -> bool:
    if not isinstance(result, dict) or result.get("type") != "image":
        return False
    source = result.get("source")
    return (
        isinstance(source, dict)
        and source.get("type") == "base64"
        and isinstance(source.get("data"), str)
        and isinstance(source.get("media_type"), str)
    )


def _truncate_utf8(text: str, max_bytes: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


class ToolResultLoader:
    """Resolves ``tool_use`` ids to their stored outputs.

    Outputs larger than ``max_bytes`` are cut down to the bound and flagged
    with ``truncated=True``; ``size_bytes`` always reports the original size.
    A truncated JSON result is sent as ``text/plain``.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES):
        self.max_bytes = max_bytes
        self.logger = get_logger(self.__class__.__name__)

    def load(
        self, tool_results_dir: Union[str, Path], tool_use_id: str
    ) -> Optional[SyncToolResult]:
        """Load one tool result.

        Returns:
            The tool result, or None when no file exists for the id

        Raises:
            ToolResultError: If the file exists but is unreadable or corrupt
        """
        file_path = Path(tool_results_dir) / f"{tool_use_id}.json"
        if not file_path.is_file():
            return None

        try:
            parsed = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ToolResultError(f"Tool result {tool_use_id}: {e}") from e

        if not isinstance(parsed, dict):
            raise ToolResultError(f"Tool result {tool_use_id}: expected a JSON object")

        tool_name = parsed.get("toolName") or "unknown"
        result = parsed.get("result")
        is_error = parsed.get("isError") is True

        content_text: Optional[str] = None
        content_binary: Optional[str] = None
        truncated = False

        if isinstance(result, str):
            content_type = "text/plain"
            content_text = result
            size_bytes = len(result.encode("utf-8"))
        elif _is_image_result(result):
            content_type = result["source"]["media_type"]
            content_binary = result["source"]["data"]
            # base64 packs 3 bytes into 4 characters
            size_bytes = (len(content_binary) * 3 + 3) // 4
        else:
            content_type = "application/json"
            content_text = json.dumps(result)
            size_bytes = len(content_text.encode("utf-8"))

        if size_bytes > self.max_bytes:
            truncated = True
            if content_text is not None:
                content_text = _truncate_utf8(content_text, self.max_bytes)
                # A cut JSON document no longer parses
                content_type = "text/plain"
            else:
                content_binary = self._truncate_base64(content_binary)
            self.logger.debug(
                "Truncated oversized tool result",
                tool_use_id=tool_use_id,
                size_bytes=size_bytes,
                max_bytes=self.max_bytes,
            )

        return SyncToolResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            content_type=content_type,
            content_text=content_text,
            content_binary=content_binary,
            size_bytes=size_bytes,
            is_error=is_error,
            truncated=truncated,
        )

    def _truncate_base64(self, data: str) -> str:
        # Whole 4-character groups only, so the prefix stays decodable
        return data[: (self.max_bytes // 3) * 4]
