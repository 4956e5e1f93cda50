"""User-data resources attached verbatim to instance creation.

A resource only has to render to bytes. Templated resources may embed
outputs of other tasks (for example the address of the API load balancer's
floating IP); those references make the owning instance depend on the
referenced tasks.
"""

from __future__ import annotations

import string
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .dependency import MissingDependencyError
from .errors import OperatorError
from .task import Task


class ResourceRenderError(OperatorError):
    """Raised when a resource cannot be rendered to bytes."""

    pass


@runtime_checkable
class Resource(Protocol):
    """Opaque payload that renders to bytes once its inputs are known."""

    def as_bytes(self, tasks: Mapping[str, Task]) -> bytes: ...


@dataclass(frozen=True)
class BytesResource:
    """Static payload."""

    data: bytes

    def as_bytes(self, tasks: Mapping[str, Task]) -> bytes:
        return self.data


@dataclass(frozen=True)
class AddressRef:
    """Reference to the address of another task, by task key."""

    key: str

    def resolve(self, tasks: Mapping[str, Task]) -> str:
        task = tasks.get(self.key)
        if task is None:
            raise ResourceRenderError(f"Referenced task not found: {self.key}")
        address = getattr(task, "ip", None)
        if not address:
            raise ResourceRenderError(f"Address of {self.key} is not known yet")
        return address


@dataclass(frozen=True)
class TemplateResource:
    """``string.Template`` payload whose placeholders may reference tasks.

    Example:
        TemplateResource(
            "#!/bin/bash\\nAPI=${api}\\nROLE=${role}\\n",
            values={"role": "Node", "api": AddressRef("FloatingIP/fip-api")},
        )
    """

    template: str
    values: Mapping[str, Any] = field(default_factory=dict)

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]:
        """Tasks referenced by the template.

        Raises:
            MissingDependencyError: If a reference names a task outside ``tasks``.
        """
        deps: list[Task] = []
        for value in self.values.values():
            if not isinstance(value, AddressRef):
                continue
            task = tasks.get(value.key)
            if task is None:
                raise MissingDependencyError(
                    f"User data references a task that is not part of the model: {value.key}"
                )
            deps.append(task)
        return deps

    def as_bytes(self, tasks: Mapping[str, Task]) -> bytes:
        rendered: dict[str, str] = {}
        for placeholder, value in self.values.items():
            if isinstance(value, AddressRef):
                rendered[placeholder] = value.resolve(tasks)
            else:
                rendered[placeholder] = str(value)
        try:
            text = string.Template(self.template).substitute(rendered)
        except (KeyError, ValueError) as e:
            raise ResourceRenderError(f"Invalid user data template: {e}") from e
        return text.encode("utf-8")
