"""Error taxonomy for Projects state handling."""

from __future__ import annotations

import json
from typing import Any


class ProjectsError(Exception):
    """Base error with a structured, user-presentable payload."""

    code = "projects_error"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.error: dict[str, Any] = {"code": self.code, "message": message, **details}
        super().__init__(message)

    def to_json(self) -> str:
        return json.dumps(self.error, default=str)


class ValidationRefusal(ProjectsError):
    """Bad or missing arguments; nothing was changed."""

    code = "validation_refusal"


class UsageError(ValidationRefusal):
    code = "usage"


class ProjectNotFoundError(ValidationRefusal):
    code = "project_not_found"


class ProjectLimitError(ValidationRefusal):
    code = "project_limit"


class ProtectedProjectError(ValidationRefusal):
    """The default project cannot be removed or archived."""

    code = "protected_project"


class WipeRefusedError(ProjectsError):
    """A destructive operation was refused by the arm/confirm guard."""

    code = "wipe_refused"


class BackupError(ProjectsError):
    """Backup failed; the destructive operation was aborted before any mutation."""

    code = "backup_failed"


class StoreWriteError(ProjectsError):
    """The state document could not be durably written."""

    code = "store_write_failed"


class StoreFormatError(ProjectsError):
    """The state document failed the version/shape check."""

    code = "store_format"
