"""The small JSON file recording manual project metadata.

Maps a project name to ``{"displayName"?, "manuallyAdded"?, "originalPath"?}``.
This is the only file agent-history owns outright.
"""

import asyncio
import json
import logging
from pathlib import Path

from .provider import run_blocking

logger = logging.getLogger(__name__)


class ProjectConfigStore:
    """Async load/save of the project configuration file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable project config %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring project config %s: expected an object", self.path)
            return {}
        return data

    def _write(self, config: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(config, indent=2), encoding="utf-8")

    async def load(self) -> dict:
        return await run_blocking(self._read)

    async def save(self, config: dict) -> None:
        await run_blocking(self._write, config)

    def mutation(self):
        """Lock serialising read-modify-write cycles on the file."""
        return self._lock
