"""Best-effort removal of the temporary directories owned by one launch."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Iterable
from pathlib import Path

from anyio import to_thread

__all__ = ["ResourceCleaner"]

logger = logging.getLogger(__name__)


class ResourceCleaner:
    """Removes a fixed set of directories, any number of times.

    A directory that is already gone counts as removed, so the exit path and
    the kill path can both run without tripping over each other. Failures
    are logged and never raised.

    Example:
        cleaner = ResourceCleaner([profile_dir, download_dir])
        cleaner.remove_sync()    # from a synchronous kill path
        await cleaner.remove()   # from the exit path
    """

    def __init__(self, directories: Iterable[str | os.PathLike[str]]) -> None:
        self.directories: tuple[Path, ...] = tuple(Path(d) for d in directories)

    async def remove(self) -> None:
        """Remove every directory concurrently in worker threads."""
        if not self.directories:
            return
        await asyncio.gather(
            *(to_thread.run_sync(self._remove_one, d) for d in self.directories)
        )

    def remove_sync(self) -> None:
        """Remove every directory on the calling thread."""
        for directory in self.directories:
            self._remove_one(directory)

    @staticmethod
    def _remove_one(directory: Path) -> bool:
        """Remove one directory tree.

        Returns:
            True if something was removed, False if it was already gone or
            removal failed
        """
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to remove temporary directory {directory}: {e}")
            return False
        logger.debug(f"Removed temporary directory {directory}")
        return True
