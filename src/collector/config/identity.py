"""Persistent collector identity."""

import re
import uuid
from pathlib import Path
from typing import Optional, Union

from ..utils.logging import get_logger


_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

logger = get_logger(__name__)


def read_collector_id(path: Union[str, Path]) -> Optional[str]:
    """Return the stored collector id, or None if absent or not a UUID."""
    path = Path(path)
    try:
        value = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Could not read collector id file", path=str(path), error=str(e))
        return None

    if _UUID_PATTERN.match(value):
        return value

    logger.warning("Ignoring malformed collector id file", path=str(path))
    return None


def get_or_create_collector_id(path: Union[str, Path]) -> str:
    """Return the stored collector id, creating and persisting one if needed."""
    path = Path(path)
    existing = read_collector_id(path)
    if existing:
        return existing

    new_id = str(uuid.uuid4())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(new_id, encoding="utf-8")
    logger.info("Created new collector id", path=str(path), collector_id=new_id)
    return new_id
