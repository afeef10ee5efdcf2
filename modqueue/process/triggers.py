"""
modqueue Event Triggers — in-process replacement for document-write triggers.

Two events drive the report pipeline:

    report.created        → ReportAggregator.aggregate(report, report_id)
    report_group.written  → TaskFactory.materialize(group, group_id)

Handlers are registered under a reference string (deduplicated per event)
and may carry a filter function over the event payload.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional

logger = logging.getLogger("modqueue.process.triggers")

REPORT_CREATED = "report.created"
REPORT_GROUP_WRITTEN = "report_group.written"

Handler = Callable[..., Any]
FilterFn = Callable[[Dict[str, Any]], bool]


class Trigger(NamedTuple):
    handler_ref: str
    handler: Handler
    filter_fn: Optional[FilterFn]


class EventTriggerRegistry:
    """
    Maps event names → handlers that run when the event fires.

    Example:
        registry.register(REPORT_CREATED, "aggregate", aggregator_handler)
        registry.fire(REPORT_CREATED, {"report": report, "report_id": rid})
    """

    def __init__(self) -> None:
        self._triggers: Dict[str, List[Trigger]] = {}

    def register(
        self,
        event_name: str,
        handler_ref: str,
        handler: Handler,
        filter_fn: Optional[FilterFn] = None,
    ) -> None:
        """Register a handler for an event."""
        triggers = self._triggers.setdefault(event_name, [])

        # Deduplicate
        if handler_ref not in {t.handler_ref for t in triggers}:
            triggers.append(Trigger(handler_ref, handler, filter_fn))
            logger.debug(f"Registered event trigger: {event_name} → {handler_ref}")

    def unregister(self, event_name: str, handler_ref: str) -> None:
        """Remove a specific handler for an event."""
        if event_name in self._triggers:
            self._triggers[event_name] = [
                t for t in self._triggers[event_name] if t.handler_ref != handler_ref
            ]

    def get_triggers(self, event_name: str) -> List[Trigger]:
        return list(self._triggers.get(event_name, []))

    def get_all_events(self) -> List[str]:
        return list(self._triggers.keys())

    def clear(self) -> None:
        self._triggers.clear()

    @property
    def count(self) -> int:
        return sum(len(v) for v in self._triggers.values())

    def fire(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> List[Any]:
        """
        Fire an event: run every matching handler with ``**payload``.

        A failing handler is logged and skipped; it does not stop the others
        and does not propagate to whoever fired the event.

        Returns:
            Results of the handlers that ran successfully.
        """
        triggers = self.get_triggers(event_name)
        if not triggers:
            logger.debug(f"No triggers registered for event: {event_name}")
            return []

        payload = payload or {}
        results = []
        for trigger in triggers:
            if trigger.filter_fn and not trigger.filter_fn(payload):
                logger.debug(f"Filter blocked trigger: {event_name} → {trigger.handler_ref}")
                continue

            try:
                results.append(trigger.handler(**payload))
            except Exception as e:
                logger.error(
                    f"Trigger {trigger.handler_ref} failed for event '{event_name}': {e}",
                    exc_info=True,
                )
        return results
