"""Service-layer exceptions."""


class StoryLoadError(Exception):
    """Raised when the story configuration cannot be read, parsed, or has no start node."""


class OperationRejected(Exception):
    """Raised when a requested operation is not allowed in the session's current state.

    The message is safe to show to the requesting client.
    """
