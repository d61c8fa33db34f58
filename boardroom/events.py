"""Progress events: streamed chunks, finalized messages and system notices."""

import logging
from collections.abc import Callable

from boardroom.models import DiscussionEvent, EventKind, Message, Participant

logger = logging.getLogger(__name__)

Listener = Callable[[DiscussionEvent], None]


class EventBus:
    """Fire-and-forget fan-out of DiscussionEvents to subscribed listeners.

    Delivery is synchronous and in emit order, so chunks for one
    participant always arrive in order. A failing listener is logged and
    skipped; it never affects the run or the other listeners.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: DiscussionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed on %s event", event.kind.value)

    def chunk(self, participant: Participant, author: str, text: str) -> None:
        self.emit(
            DiscussionEvent(EventKind.CHUNK, text=text, participant_id=participant.id, author=author)
        )

    def message(self, message: Message) -> None:
        self.emit(
            DiscussionEvent(
                EventKind.MESSAGE,
                text=message.text,
                participant_id=message.participant_id,
                author=message.author,
                message=message,
            )
        )

    def system(self, status: str, text: str, **data) -> None:
        self.emit(DiscussionEvent(EventKind.SYSTEM, text=text, status=status, data=data))
