"""Resource allocation table.

The table is loaded from a checked-in TOML file and validated with pydantic.
Lookup is a pure read; an identity with no entry raises
``UnknownWorkspaceError`` -- the same error the identity resolver raises, so
the operator sees one failure type regardless of where resolution stopped.

Table file lookup order:

1. ``DEVFLEET_TABLE_PATH`` (explicit override)
2. ``devfleet.toml`` at the worktree root
3. The default table bundled with the package
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from devfleet.orchestrator.models.enums import Step
from devfleet.orchestrator.models.workspace import (
    AllocationTableModel,
    AppSpec,
    DatabaseSpec,
    ResourceBundle,
    WorkspaceEntry,
)

TABLE_FILENAME = "devfleet.toml"
DEFAULT_TABLE_PATH = Path(__file__).parent / "worktrees.toml"

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class UnknownWorkspaceError(LookupError):
    """Identity has no entry in the allocation table."""

    def __init__(self, workspace: str, step: Step = Step.LOOKUP, detail: str | None = None) -> None:
        self.workspace = workspace
        self.step = step
        detail = detail or "no entry in the allocation table"
        super().__init__(f"Workspace '{workspace}' [{step}]: {detail}")


class TableLoadError(ValueError):
    """The table file is missing, unparsable, or violates an invariant."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot load allocation table {path}: {reason}")


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------


class AllocationTable:
    """Read-only view over a validated ``AllocationTableModel``."""

    def __init__(self, model: AllocationTableModel, source: Path | None = None) -> None:
        self._model = model
        self.source = source

    @property
    def project(self) -> str:
        return self._model.project

    @property
    def database(self) -> DatabaseSpec:
        return self._model.database

    @property
    def app(self) -> AppSpec:
        return self._model.app

    @property
    def entries(self) -> list[WorkspaceEntry]:
        """All entries in file order."""
        return list(self._model.workspaces)

    @property
    def identities(self) -> list[str]:
        return [entry.identity for entry in self._model.workspaces]

    def lookup(self, workspace: str) -> WorkspaceEntry:
        """Find an entry by identity or alias (case-insensitive)."""
        key = workspace.strip().lower()
        for entry in self._model.workspaces:
            if key in entry.names():
                return entry
        raise UnknownWorkspaceError(workspace)

    def bundle(self, workspace: str) -> ResourceBundle:
        return self.lookup(workspace).bundle

    def directory_name(self, workspace: str) -> str:
        """Worktree directory name for an identity: ``{project}{suffix}``."""
        return f"{self.project}{self.lookup(workspace).suffix}"

    def database_url(self, workspace: str) -> str:
        bundle = self.bundle(workspace)
        db = self.database
        return f"postgresql://{db.user}:{db.password}@{db.host}:{bundle.db_port}/{bundle.db_logical_name}"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_table(path: str | Path) -> AllocationTable:
    """Load and validate a table file.  Raises ``TableLoadError``."""
    path = Path(path)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise TableLoadError(path, exc.strerror or str(exc)) from exc
    except tomllib.TOMLDecodeError as exc:
        raise TableLoadError(path, f"invalid TOML: {exc}") from exc

    try:
        model = AllocationTableModel.model_validate(raw)
    except ValidationError as exc:
        raise TableLoadError(path, str(exc)) from exc

    logger.debug("Loaded allocation table {} ({} workspaces)", path, len(model.workspaces))
    return AllocationTable(model, source=path)


def locate_table(worktree: Path | None, override: str | Path | None = None) -> Path:
    """Pick the table file to use for a worktree (see module docstring)."""
    if override:
        return Path(override)
    if worktree is not None:
        candidate = worktree / TABLE_FILENAME
        if candidate.is_file():
            return candidate
    return DEFAULT_TABLE_PATH
