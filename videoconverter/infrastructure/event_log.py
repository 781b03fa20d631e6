import logging
from videoconverter.domain.events import Event
from videoconverter.infrastructure.event_bus import EventBus

EVENT_LOGGER_PREFIX = "videoconverter.events"

class EventLogger:
    """Writes every domain event on the bus to stdlib logging.

    The logger name carries the emitting component; the structured fields are
    attached to the record as `component` and `context` extras so handlers
    with a structured formatter can pick them up.
    """

    def __init__(self, event_bus: EventBus, prefix: str = EVENT_LOGGER_PREFIX):
        self.prefix = prefix
        event_bus.subscribe(Event, self.handle)

    def handle(self, event: Event) -> None:
        logger = logging.getLogger(f"{self.prefix}.{event.component}")
        if not logger.isEnabledFor(event.level):
            return
        logger.log(
            event.level,
            event.message(),
            extra={"component": event.component, "context": event.context()},
        )
