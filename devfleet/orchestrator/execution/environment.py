"""Environment materialisation for a supervised process pair.

The resolved bundle is turned into a set of named variables consumed by the
application (ports, base URLs, database connection string).  They are
scoped to one invocation:

- the process environment is a fresh ``dict`` passed to the children;
  ``os.environ`` is never mutated,
- the env files written here live under the worktree's own app directory,
  so another workspace's run never reads them.

Env files
---------

- **server env file** (``app/.env.server``): created from the example file if
  missing, then ``DATABASE_URL`` / ``CLIENT_URL`` / ``SERVER_URL`` are updated
  in place; every other line is preserved.
- **client env file** (``app/.env.client``): rendered from a template by
  replacing ``{{NAME}}`` placeholders with the variables.
"""

from __future__ import annotations

import contextlib
import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path

from loguru import logger

from devfleet.orchestrator.models.workspace import AppSpec
from devfleet.orchestrator.table import AllocationTable

SERVER_ENV_KEYS = ("DATABASE_URL", "CLIENT_URL", "SERVER_URL")
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Z0-9_]+)\s*\}\}")


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------


def template_fields(table: AllocationTable, workspace: str) -> dict[str, str | int]:
    """Fields available to command and ``extra_env`` templates."""
    entry = table.lookup(workspace)
    bundle = entry.bundle
    return {
        "workspace": entry.identity,
        **bundle.model_dump(),
        "database_url": table.database_url(entry.identity),
        "client_url": f"http://localhost:{bundle.frontend_port}",
        "server_url": f"http://localhost:{bundle.backend_port}",
    }


def workspace_variables(table: AllocationTable, workspace: str) -> dict[str, str]:
    """Named variables injected into the application process pair."""
    fields = template_fields(table, workspace)
    client_url = str(fields["client_url"])
    server_url = str(fields["server_url"])

    variables = {
        "WORKTREE_NAME": str(fields["workspace"]),
        "FRONTEND_PORT": str(fields["frontend_port"]),
        "BACKEND_PORT": str(fields["backend_port"]),
        "DB_PORT": str(fields["db_port"]),
        "STUDIO_PORT": str(fields["tool_port"]),
        "DB_NAME": str(fields["db_container_name"]),
        "DATABASE_URL": str(fields["database_url"]),
        "CLIENT_URL": client_url,
        "SERVER_URL": server_url,
        # Dev server / runtime ports
        "PORT": str(fields["backend_port"]),
        "VITE_PORT": str(fields["frontend_port"]),
        "WASP_WEB_CLIENT_URL": client_url,
        "WASP_SERVER_URL": server_url,
        # Seed scripts and E2E tests
        "FRONTEND_URL": client_url,
        "BACKEND_URL": server_url,
    }
    for key, template in table.app.extra_env.items():
        variables[key] = template.format(**fields)
    return variables


def materialize_environment(variables: Mapping[str, str], base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Child-process environment: a copy of *base* (default ``os.environ``) plus *variables*."""
    env = dict(os.environ if base is None else base)
    env.update(variables)
    return env


# ---------------------------------------------------------------------------
# Env files
# ---------------------------------------------------------------------------


def write_env_files(app_dir: Path, app: AppSpec, variables: Mapping[str, str]) -> list[Path]:
    """Write the worktree-local env files.  Returns the paths written."""
    written: list[Path] = []

    server = _write_server_env(app_dir, app, variables)
    if server is not None:
        written.append(server)

    client = _write_client_env(app_dir, app, variables)
    if client is not None:
        written.append(client)

    return written


def _write_server_env(app_dir: Path, app: AppSpec, variables: Mapping[str, str]) -> Path | None:
    if not app.server_env_file:
        return None
    path = app_dir / app.server_env_file

    if not path.exists():
        example = app_dir / app.server_env_example if app.server_env_example else None
        if example is None or not example.is_file():
            logger.debug("No {} or example file in {}; skipping", app.server_env_file, app_dir)
            return None
        logger.info("Creating {} from {}", path.name, example.name)
        shutil.copyfile(example, path)

    updates = {key: variables[key] for key in SERVER_ENV_KEYS if key in variables}
    content = upsert_env_lines(path.read_text(encoding="utf-8"), updates)
    _atomic_write(path, content)
    return path


def _write_client_env(app_dir: Path, app: AppSpec, variables: Mapping[str, str]) -> Path | None:
    if not app.client_env_file or not app.client_env_template:
        return None
    template = app_dir / app.client_env_template
    if not template.is_file():
        logger.debug("No {} in {}; skipping client env", app.client_env_template, app_dir)
        return None

    path = app_dir / app.client_env_file
    _atomic_write(path, render_template(template.read_text(encoding="utf-8"), variables))
    return path


def upsert_env_lines(content: str, updates: Mapping[str, str]) -> str:
    """Replace ``KEY=...`` lines for each key in *updates*; append the missing ones."""
    pending = dict(updates)
    lines = content.splitlines()
    for i, line in enumerate(lines):
        key, sep, _ = line.partition("=")
        if sep and key in pending:
            lines[i] = f"{key}={pending.pop(key)}"
    lines.extend(f"{key}={value}" for key, value in pending.items())
    return "\n".join(lines) + "\n"


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{{NAME}}`` placeholders.  Unknown names are left untouched."""
    return _PLACEHOLDER.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename.

    A dev server watching the file never sees a partially-written version.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
