"""Full-directory backup taken before destructive operations."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path

from projects_ux.errors import BackupError

logger = logging.getLogger(__name__)


def format_backup_stamp(moment: datetime | None = None) -> str:
    """Filesystem-safe local timestamp at second precision, e.g. ``20260118-093015``."""
    return (moment or datetime.now()).strftime("%Y%m%d-%H%M%S")


def backup_dir_for(root_dir: Path, stamp: str) -> Path:
    """``<root parent>/backup_<component>_<stamp>``; the copy itself lands in ``<that>/<root name>``."""
    component = root_dir.name.replace("-", "_")
    return root_dir.parent / f"backup_{component}_{stamp}"


def backup_root(root_dir: Path, backup_dir: Path) -> Path:
    """Recursively copy ``root_dir`` into ``backup_dir``.

    A missing ``root_dir`` is not an error: an empty target directory is created
    so the backup location always exists. Any other failure raises BackupError.
    """
    target = backup_dir / root_dir.name
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copytree(root_dir, target, dirs_exist_ok=True)
    except FileNotFoundError:
        if root_dir.exists():
            logger.error("backup: copy failed", extra={"root": str(root_dir), "target": str(target)})
            raise BackupError(
                f"Backup failed; aborting wipe. (missing file during copy of {root_dir})",
                root=str(root_dir),
                target=str(target),
            ) from None
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Backup failed; aborting wipe. ({exc})", target=str(target)) from exc
        logger.info("backup: no prior state, created empty backup", extra={"target": str(target)})
        return target
    except (OSError, shutil.Error) as exc:
        logger.error("backup: copy failed", extra={"root": str(root_dir), "target": str(target), "error": str(exc)})
        raise BackupError(f"Backup failed; aborting wipe. ({exc})", root=str(root_dir), target=str(target)) from exc
    logger.info("backup: state directory copied", extra={"root": str(root_dir), "target": str(target)})
    return target
