# src/pesterbridge/exceptions.py

"""
Exception hierarchy for pesterbridge.
"""


class PesterBridgeError(Exception):
    """Base class for all pesterbridge errors."""

    def __init__(self, message: str, details: Exception | None = None):
        self.details = details
        super().__init__(message)
        if details and hasattr(self, "add_note"):
            self.add_note(f"Original error: {type(details).__name__}: {details}")


class ConfigurationError(PesterBridgeError):
    """Invalid or missing configuration."""

    pass


# --- Process level ---
class SpawnFailure(PesterBridgeError):
    """The PowerShell executable could not be launched."""

    pass


class NoInterpreterFound(SpawnFailure):
    """No usable PowerShell executable was found on this system."""

    pass


# --- Invocation level ---
class InvocationError(PesterBridgeError):
    """Base class for errors that fail a single invocation."""

    def __init__(
        self,
        message: str,
        invocation_id: str | None = None,
        details: Exception | None = None,
    ):
        self.invocation_id = invocation_id
        full_message = message
        if invocation_id:
            full_message += f" (Invocation: '{invocation_id}')"
        super().__init__(full_message, details)


class DecodeError(InvocationError):
    """A line of output was not valid JSON."""

    def __init__(self, fragment: str, details: Exception | None = None):
        self.fragment = fragment
        super().__init__(f"Failed to decode PowerShell output as JSON: {fragment!r}", details=details)


class UnknownStreamTag(InvocationError):
    """A record carried a __PSStream tag that is not one of the seven streams."""

    def __init__(self, tag: object):
        self.tag = tag
        super().__init__(f"Unknown PSStream reported: {tag!r}")


class TerminatingScriptError(InvocationError):
    """The script reported a terminating error on the error channel."""

    def __init__(self, error: object, invocation_id: str | None = None):
        self.error = error
        super().__init__(f"PowerShell script failed: {error}", invocation_id)


class InterpreterExited(InvocationError):
    """The PowerShell process went away before the invocation finished."""

    pass


# --- Record / tree level ---
class RecordDecodeError(PesterBridgeError):
    """A discovery or result record is missing fields or has the wrong shape."""

    def __init__(self, message: str, record: object = None):
        self.record = record
        super().__init__(f"{message}: {record!r}")


class OrphanedTestRecord(PesterBridgeError):
    """Discovery reported a child before its parent."""

    def __init__(self, test_id: str, parent_id: str | None):
        self.test_id = test_id
        self.parent_id = parent_id
        super().__init__(
            f"Test item '{test_id}' does not have a parent ('{parent_id}'). "
            "Discovery must emit parents before children."
        )


class DuplicateTestId(OrphanedTestRecord):
    """Discovery reused an id, so the item would be placed under itself or a file would be moved."""

    def __init__(self, test_id: str, parent_id: str | None):
        self.test_id = test_id
        self.parent_id = parent_id
        PesterBridgeError.__init__(
            self,
            f"Test item '{test_id}' cannot be placed under '{parent_id}': "
            "the id is already used by that parent, one of its ancestors or a test file.",
        )


class InconsistentResult(PesterBridgeError):
    """A run result referenced an id that discovery never reported."""

    def __init__(self, test_id: str):
        self.test_id = test_id
        super().__init__(
            f"'{test_id}' was returned from Pester but is not tracked in the test tree."
        )


class ListenerBindFailure(PesterBridgeError):
    """The side-channel listener could not bind or was disposed while waiting."""

    def __init__(self, path: str, details: Exception | None = None):
        self.path = path
        super().__init__(f"Failed to listen on pipe '{path}'", details)


# 🔼⚙️
