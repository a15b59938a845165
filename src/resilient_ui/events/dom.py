"""Minimal in-memory element tree used as the delegated-dispatch target.

The presentation layer builds the tree; the event bus only needs parent
links, selector matching, per-node listeners and bubbling dispatch.

Supported selectors: type (``button``), ``*``, ``#id``, ``.class``,
``[attr]``, ``[attr=value]``, compounds of those (``button.primary[data-x]``),
descendant combinators (``.panel .field``) and comma-separated lists.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

Listener = Callable[["DomEvent"], Any]

_SIMPLE_RE = re.compile(
    r"""
    (?P<tag>^(?:\*|[a-zA-Z][\w-]*))
    | \#(?P<id>[\w-]+)
    | \.(?P<cls>[\w-]+)
    | \[\s*(?P<attr>[\w-]+)\s*(?:=\s*(?P<value>"[^"]*"|'[^']*'|[^\]\s]+)\s*)?\]
    """,
    re.VERBOSE,
)


@dataclass(frozen=True, slots=True)
class _Compound:
    tag: str | None
    ids: tuple[str, ...]
    classes: tuple[str, ...]
    attributes: tuple[tuple[str, str | None], ...]

    def matches(self, element: Element) -> bool:
        if self.tag is not None and self.tag != "*" and element.tag != self.tag:
            return False
        if any(element.id != ident for ident in self.ids):
            return False
        if any(cls not in element.classes for cls in self.classes):
            return False
        for name, value in self.attributes:
            if name not in element.attributes:
                return False
            if value is not None and element.attributes[name] != value:
                return False
        return True


def _parse_compound(text: str, selector: str) -> _Compound:
    tag: str | None = None
    ids: list[str] = []
    classes: list[str] = []
    attributes: list[tuple[str, str | None]] = []
    pos = 0
    while pos < len(text):
        match = _SIMPLE_RE.match(text, pos)
        if match is None or match.end() == pos:
            msg = f"Unsupported selector: {selector!r}"
            raise ValueError(msg)
        if match.group("tag"):
            if pos != 0:
                msg = f"Unsupported selector: {selector!r}"
                raise ValueError(msg)
            tag = match.group("tag").lower()
        elif match.group("id"):
            ids.append(match.group("id"))
        elif match.group("cls"):
            classes.append(match.group("cls"))
        else:
            value = match.group("value")
            if value is not None and value[:1] in ("'", '"'):
                value = value[1:-1]
            attributes.append((match.group("attr"), value))
        pos = match.end()
    return _Compound(tag, tuple(ids), tuple(classes), tuple(attributes))


@lru_cache(maxsize=512)
def parse_selector(selector: str) -> tuple[tuple[_Compound, ...], ...]:
    """Parse a selector list into descendant chains of compounds.

    Raises:
        ValueError: If the selector is empty or uses unsupported syntax.
    """
    chains: list[tuple[_Compound, ...]] = []
    for part in selector.split(","):
        compounds = part.split()
        if not compounds:
            msg = f"Unsupported selector: {selector!r}"
            raise ValueError(msg)
        chains.append(tuple(_parse_compound(text, selector) for text in compounds))
    return tuple(chains)


def _chain_matches(element: Element, chain: tuple[_Compound, ...]) -> bool:
    if not chain[-1].matches(element):
        return False
    node = element.parent
    for compound in reversed(chain[:-1]):
        while node is not None and not compound.matches(node):
            node = node.parent
        if node is None:
            return False
        node = node.parent
    return True


@dataclass
class DomEvent:
    """A native interaction event travelling through the tree."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    target: Element | None = None
    current_target: Element | None = None
    propagation_stopped: bool = False

    def stop_propagation(self) -> None:
        self.propagation_stopped = True


@dataclass(eq=False)
class Element:
    """A node in the element tree."""

    tag: str
    id: str | None = None
    classes: set[str] = field(default_factory=set)
    attributes: dict[str, str] = field(default_factory=dict)
    parent: Element | None = field(default=None, repr=False)
    children: list[Element] = field(default_factory=list, repr=False)
    _listeners: dict[str, list[Listener]] = field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.tag = self.tag.lower()
        self.classes = set(self.classes)

    def append(self, child: Element) -> Element:
        """Attach ``child`` as the last child, detaching it from any old parent."""
        child.remove()
        child.parent = self
        self.children.append(child)
        return child

    def remove(self) -> None:
        if self.parent is not None:
            self.parent.children.remove(self)
            self.parent = None

    def ancestors(self) -> Iterator[Element]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def matches(self, selector: str) -> bool:
        return any(_chain_matches(self, chain) for chain in parse_selector(selector))

    def add_event_listener(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def remove_event_listener(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event_type, None)

    def listeners(self, event_type: str) -> list[Listener]:
        return list(self._listeners.get(event_type, []))


class Document(Element):
    """Root of the tree; dispatch bubbles from the target up to here."""

    def __init__(self) -> None:
        super().__init__(tag="#document")

    def matches(self, selector: str) -> bool:
        return False

    def contains(self, element: Element) -> bool:
        return element is self or any(node is self for node in element.ancestors())

    def create_element(
        self,
        tag: str,
        *,
        id: str | None = None,  # noqa: A002
        classes: set[str] | None = None,
        parent: Element | None = None,
        **attributes: str,
    ) -> Element:
        """Create an element and attach it under ``parent`` (default: root)."""
        element = Element(
            tag=tag,
            id=id,
            classes=set(classes or ()),
            attributes={
                key.replace("_", "-"): value for key, value in attributes.items()
            },
        )
        (parent or self).append(element)
        return element

    def dispatch(self, target: Element, event: DomEvent) -> DomEvent:
        """Deliver ``event`` to ``target`` and bubble through its ancestors.

        Args:
            target: Element the interaction happened on.
            event: The event to deliver; ``target`` and ``current_target``
                are filled in during dispatch.

        Returns:
            The same event, after propagation finished or was stopped.
        """
        event.target = target
        for node in (target, *target.ancestors()):
            event.current_target = node
            for listener in node.listeners(event.type):
                listener(event)
            if event.propagation_stopped:
                break
        event.current_target = None
        return event
