from __future__ import annotations


class ContentFlowError(Exception):
    """Base error for contentflow."""


class InvalidRecurrenceError(ContentFlowError):
    """Recurrence policy cannot produce run times (bad cron, time or timezone)."""


class ProgramStateError(ContentFlowError):
    """Program lifecycle transition not allowed from the current status."""


class ProgramAlreadyRunningError(ProgramStateError):
    """Another scheduler tick already claimed this program."""


class RunStateError(ContentFlowError):
    """Program run is not in a state that accepts the requested update."""


class ItemStateError(ContentFlowError):
    """Program item was already resolved or is otherwise not updatable."""


class ContentTypeMismatchError(ItemStateError):
    """Produced content kind does not match the item's generation type."""


class QueueStateError(ContentFlowError):
    """Publication queue entry transition not allowed."""


class PublishError(ContentFlowError):
    """Destination rejected or failed a publish request."""


class ReferenceDataError(ContentFlowError):
    """Reference snapshot is missing or malformed."""
