"""User-visible notices raised by recovery and degradation.

Dismissible notices carry optional actions (e.g. retry a failed request).
Blocking notices cannot be dismissed; they offer a reload action and stay
until the runtime is torn down.
"""

from __future__ import annotations

import inspect
import itertools
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from resilient_ui.events.models import EventKind, NoticeEvent

if TYPE_CHECKING:
    from resilient_ui.events.bus import EventBus

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class NoticeKind(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class NoticeAction(BaseModel):
    """A button on a notice."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    label: str
    callback: Callable[[], Any]


class Notice(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    title: str
    message: str = ""
    kind: NoticeKind = NoticeKind.INFO
    blocking: bool = False
    actions: list[NoticeAction] = Field(default_factory=list)

    @property
    def dismissible(self) -> bool:
        return not self.blocking


class NoticeBoard:
    """Active notices, in the order they were shown."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._notices: dict[str, Notice] = {}
        self._ids = itertools.count(1)

    def show(
        self,
        title: str,
        message: str = "",
        *,
        kind: NoticeKind = NoticeKind.INFO,
        blocking: bool = False,
        actions: list[NoticeAction] | None = None,
    ) -> Notice:
        notice = Notice(
            id=f"notice-{next(self._ids)}",
            title=title,
            message=message,
            kind=kind,
            blocking=blocking,
            actions=actions or [],
        )
        self._notices[notice.id] = notice
        logger.info(
            "notice_shown", notice_id=notice.id, kind=kind.value, blocking=blocking
        )
        self._bus.emit(EventKind.NOTICE_SHOWN, self._payload(notice))
        return notice

    def dismiss(self, notice_id: str) -> bool:
        """Remove a dismissible notice; blocking notices are refused."""
        notice = self._notices.get(notice_id)
        if notice is None:
            return False
        if notice.blocking:
            logger.warning("blocking_notice_not_dismissible", notice_id=notice_id)
            return False
        del self._notices[notice_id]
        self._bus.emit(EventKind.NOTICE_DISMISSED, self._payload(notice))
        return True

    async def invoke(self, notice_id: str, label: str) -> Any:
        """Run the action ``label`` of a notice.

        A dismissible notice is dismissed once its action has run.

        Raises:
            KeyError: If the notice or the action does not exist.
        """
        notice = self._notices.get(notice_id)
        if notice is None:
            raise KeyError(notice_id)
        action = next((a for a in notice.actions if a.label == label), None)
        if action is None:
            raise KeyError(label)

        logger.info("notice_action_invoked", notice_id=notice_id, action=label)
        result = action.callback()
        if inspect.isawaitable(result):
            result = await result
        if not notice.blocking:
            self.dismiss(notice_id)
        return result

    def get(self, notice_id: str) -> Notice | None:
        return self._notices.get(notice_id)

    @property
    def active(self) -> list[Notice]:
        return list(self._notices.values())

    @property
    def blocking(self) -> list[Notice]:
        return [n for n in self._notices.values() if n.blocking]

    def clear(self) -> int:
        """Dismiss every dismissible notice."""
        ids = [n.id for n in self._notices.values() if not n.blocking]
        return sum(1 for notice_id in ids if self.dismiss(notice_id))

    @staticmethod
    def _payload(notice: Notice) -> NoticeEvent:
        return NoticeEvent(notice_id=notice.id, title=notice.title, kind=notice.kind)
