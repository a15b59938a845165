"""Named runtime components and their registry."""

from __future__ import annotations

from enum import StrEnum
from typing import Protocol, runtime_checkable

import structlog

from resilient_ui.exceptions import ComponentError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class ComponentName(StrEnum):
    EVENTS = "events"
    STATE = "state"
    REQUESTS = "requests"
    REPORTING = "reporting"
    TABS = "tabs"
    MENU = "menu"
    FORMS = "forms"

    @classmethod
    def parse(cls, value: str | None) -> ComponentName | None:
        """Look up a name case-insensitively; None when unknown."""
        if not value:
            return None
        try:
            return cls(value.lower())
        except ValueError:
            return None


@runtime_checkable
class Component(Protocol):
    """Capability contract every registered component satisfies."""

    initialized: bool

    async def init(self) -> None: ...

    def destroy(self) -> None: ...


class ComponentRegistry:
    """Components keyed by ``ComponentName``, kept in registration order."""

    def __init__(self) -> None:
        self._components: dict[ComponentName, Component] = {}

    def register(self, name: ComponentName, component: Component) -> None:
        if not isinstance(component, Component):
            msg = f"{type(component).__name__} does not implement Component"
            raise TypeError(msg)
        self._components[ComponentName(name)] = component
        logger.debug("component_registered", component=str(name))

    def unregister(self, name: ComponentName) -> Component | None:
        return self._components.pop(ComponentName(name), None)

    def get(self, name: ComponentName) -> Component | None:
        return self._components.get(ComponentName(name))

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def names(self) -> list[ComponentName]:
        return list(self._components)

    def status(self) -> dict[str, bool]:
        """Initialization flag of every registered component."""
        return {
            name.value: bool(component.initialized)
            for name, component in self._components.items()
        }

    def uninitialized(self) -> list[ComponentName]:
        return [
            name
            for name, component in self._components.items()
            if not component.initialized
        ]

    async def init_component(self, name: ComponentName) -> None:
        """(Re-)run one component's initialization.

        Raises:
            ComponentError: If the component is unknown or its init fails.
        """
        component = self.get(name)
        if component is None:
            msg = f"Component not found: {name}"
            raise ComponentError(msg)
        try:
            await component.init()
        except Exception as exc:
            msg = f"Component {name} initialization failed: {exc}"
            raise ComponentError(msg) from exc

    def destroy_all(self) -> None:
        """Destroy components in reverse registration order."""
        for name, component in reversed(list(self._components.items())):
            try:
                component.destroy()
            except Exception as exc:
                logger.error(
                    "component_destroy_failed", component=name.value, error=str(exc)
                )
