"""Typed errors raised by the presence and assignment engine."""


class DispatchError(Exception):
    """Base class for engine errors."""


class InvalidStatus(DispatchError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid personal status: {value!r} (expected online, afk or offline)")


class InvalidMode(DispatchError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid system mode: {value!r} (expected hitl, autopilot or off)")


class TicketNotFound(DispatchError):
    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Ticket not found: {ticket_id}")


class StoreUnavailable(DispatchError):
    """A read against the store failed after retrying."""


class StoreWriteFailed(DispatchError):
    """A store mutation failed after retrying; prior state is unchanged."""


class PresenceWriteFailed(StoreWriteFailed):
    pass


class AssignmentWriteFailed(StoreWriteFailed):
    pass


class ModeWriteFailed(StoreWriteFailed):
    pass


class SettingsWriteFailed(StoreWriteFailed):
    pass
