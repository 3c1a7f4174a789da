class ReminderError(Exception):
    """Base class for reminder subsystem errors."""


class ReminderValidationError(ReminderError):
    """Scheduling input was rejected before touching the store."""


class ReminderStorageError(ReminderError):
    """The reminder store could not complete an operation."""


class PollerStateError(ReminderError):
    """A poller lifecycle call was made in the wrong state."""
