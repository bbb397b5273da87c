"""Resource allocation data model.

The allocation table is a static, checked-in mapping from workspace identity
to a disjoint resource bundle.  It is never mutated at runtime: adding a
worktree is a reviewed edit to the table file, and the uniqueness of every
port and container name is enforced when the table is loaded.
"""

from __future__ import annotations

import re
from collections import Counter
from string import Formatter

from pydantic import BaseModel, ConfigDict, Field, model_validator

# -- Bundle --------------------------------------------------------------------


class ResourceBundle(BaseModel):
    """Ports and database names owned by exactly one workspace."""

    model_config = ConfigDict(frozen=True)

    frontend_port: int = Field(ge=1, le=65535)
    backend_port: int = Field(ge=1, le=65535)
    db_port: int = Field(ge=1, le=65535)
    tool_port: int = Field(ge=1, le=65535, description="Auxiliary tool port (database studio)")
    db_container_name: str = Field(min_length=1)
    db_logical_name: str = Field(default="dev", min_length=1)

    @property
    def ports(self) -> tuple[int, int, int, int]:
        return (self.frontend_port, self.backend_port, self.db_port, self.tool_port)

    @property
    def app_ports(self) -> tuple[int, int]:
        """Ports bound by the supervised process pair."""
        return (self.frontend_port, self.backend_port)


class WorkspaceEntry(BaseModel):
    """One row of the allocation table."""

    model_config = ConfigDict(frozen=True)

    identity: str = Field(min_length=1)
    suffix: str = Field(default="", description="Directory suffix, e.g. '-Dev1'.  Empty for the bare default worktree")
    aliases: tuple[str, ...] = ()
    bundle: ResourceBundle

    def names(self) -> set[str]:
        """Lower-cased identity plus aliases."""
        return {self.identity.lower(), *(alias.lower() for alias in self.aliases)}


# -- Shared sections -------------------------------------------------------------


class DatabaseSpec(BaseModel):
    """Engine settings shared by every workspace container."""

    model_config = ConfigDict(frozen=True)

    image: str = "postgres:14"
    user: str = "dev"
    password: str = "dev"
    container_port: int = 5432
    host: str = "localhost"


class AppSpec(BaseModel):
    """How the opaque application process pair is launched.

    Command strings are templates formatted with the bundle fields
    (``{frontend_port}``, ``{backend_port}``, ``{db_port}``, ``{tool_port}``,
    ``{db_container_name}``, ``{db_logical_name}``) plus ``{workspace}``.
    """

    model_config = ConfigDict(frozen=True)

    workdir: str = "app"
    frontend_command: str = "npm run dev -- --port {frontend_port} --strictPort"
    backend_command: str | None = "npm run server"
    tool_command: str | None = "npx prisma studio --port {tool_port} --browser none"
    clean_command: str | None = None
    clean_paths: tuple[str, ...] = ()

    server_env_file: str | None = ".env.server"
    server_env_example: str | None = ".env.server.example"
    client_env_file: str | None = ".env.client"
    client_env_template: str | None = ".env.client.template"

    extra_env: dict[str, str] = Field(default_factory=dict)


TEMPLATE_FIELDS = frozenset({"workspace", *ResourceBundle.model_fields, "database_url", "client_url", "server_url"})
"""Placeholder names a command or ``extra_env`` template may use."""


def unknown_placeholders(template: str) -> list[str]:
    """Placeholders in *template* that are not template fields ('{}' for positional ones).

    Raises ``ValueError`` when the template itself is malformed.
    """
    unknown = []
    for _, name, _, _ in Formatter().parse(template):
        if name is None:
            continue
        root = re.split(r"[.\[]", name, maxsplit=1)[0]
        if root not in TEMPLATE_FIELDS:
            unknown.append(f"{{{name}}}")
    return unknown


# -- Table ---------------------------------------------------------------------


class AllocationTableModel(BaseModel):
    """Validated contents of the table file."""

    project: str = Field(min_length=1, description="Directory name of the default worktree")
    database: DatabaseSpec = Field(default_factory=DatabaseSpec)
    app: AppSpec = Field(default_factory=AppSpec)
    workspaces: list[WorkspaceEntry] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_uniqueness(self) -> AllocationTableModel:
        ports = Counter(port for entry in self.workspaces for port in entry.bundle.ports)
        shared_ports = sorted(port for port, count in ports.items() if count > 1)
        if shared_ports:
            msg = f"ports allocated to more than one workspace: {shared_ports}"
            raise ValueError(msg)

        containers = Counter(entry.bundle.db_container_name for entry in self.workspaces)
        shared_containers = sorted(name for name, count in containers.items() if count > 1)
        if shared_containers:
            msg = f"container names allocated to more than one workspace: {shared_containers}"
            raise ValueError(msg)

        names = Counter(name for entry in self.workspaces for name in entry.names())
        shared_names = sorted(name for name, count in names.items() if count > 1)
        if shared_names:
            msg = f"identities/aliases used more than once: {shared_names}"
            raise ValueError(msg)

        suffixes = Counter(entry.suffix for entry in self.workspaces)
        shared_suffixes = sorted(repr(s) for s, count in suffixes.items() if count > 1)
        if shared_suffixes:
            msg = f"directory suffixes used more than once: {', '.join(shared_suffixes)}"
            raise ValueError(msg)

        return self

    @model_validator(mode="after")
    def _check_extra_env(self) -> AllocationTableModel:
        for key, template in self.app.extra_env.items():
            try:
                unknown = unknown_placeholders(template)
            except ValueError as exc:
                msg = f"app.extra_env.{key}: malformed template {template!r}: {exc}"
                raise ValueError(msg) from exc
            if unknown:
                msg = f"app.extra_env.{key}: unknown placeholder(s) {', '.join(unknown)} in {template!r}"
                raise ValueError(msg)
        return self
