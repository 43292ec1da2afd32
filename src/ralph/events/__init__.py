"""Headless event models, formatters, and the event pipeline."""

from ralph.events.formatters import (
    EventFormatter,
    FanOutFormatter,
    JsonFormatter,
    JsonlFormatter,
    OutputFormat,
    TextFormatter,
    create_formatter,
)
from ralph.events.models import HeadlessEvent, HeadlessSummary, event_to_dict
from ralph.events.pipeline import HeadlessEventPipeline

__all__ = [
    "EventFormatter",
    "FanOutFormatter",
    "HeadlessEvent",
    "HeadlessEventPipeline",
    "HeadlessSummary",
    "JsonFormatter",
    "JsonlFormatter",
    "OutputFormat",
    "TextFormatter",
    "create_formatter",
    "event_to_dict",
]
