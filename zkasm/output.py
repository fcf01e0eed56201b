"""
Atomic Output Publishing

Both outputs of a compilation are written to temporary files beside their
destinations and moved into place only after every file is complete. If
moving any of them fails, the ones already moved are taken back out and
files that existed before the run are restored, so a failed run never
leaves a partial program or memory table behind.
"""

import logging
import os
import tempfile

logger = logging.getLogger(__name__)


def _temp_beside(path: str, tag: str) -> str:
    directory = os.path.dirname(os.path.abspath(path))
    fd, name = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=tag)
    os.close(fd)
    return name


def publish(files: dict[str, str]) -> None:
    """Write `path -> text` atomically as a group."""
    staged: list[tuple[str, str]] = []
    backups: dict[str, str] = {}
    published: list[str] = []
    try:
        for path, text in files.items():
            directory = os.path.dirname(os.path.abspath(path))
            with tempfile.NamedTemporaryFile(
                mode="w", dir=directory, prefix=f".{os.path.basename(path)}.",
                suffix=".tmp", delete=False, newline="\n",
            ) as f:
                staged.append((f.name, path))
                f.write(text)
        for tmp, path in staged:
            if os.path.isfile(path):
                backup = _temp_beside(path, ".bak")
                os.replace(path, backup)
                backups[path] = backup
            os.replace(tmp, path)
            published.append(path)
            logger.debug("published %s", path)
    except BaseException:
        for path in published:
            os.unlink(path)
        for path, backup in backups.items():
            os.replace(backup, path)
        for tmp, _ in staged:
            if os.path.exists(tmp):
                os.unlink(tmp)
        logger.debug("rolled back %d published files", len(published))
        raise
    for backup in backups.values():
        os.unlink(backup)
