"""Exception types raised by the flagging core.

None of these escape to the transport layer: the engine maps them onto
report outcomes, the token decoder recovers from its own, and threshold
problems become administrator notices.
"""


class FlagGuardError(Exception):
    """Base flagging error."""

    def __init__(self, message: str, code: str = "flag_guard_error"):
        super().__init__(message)
        self.message = message
        self.code = code


class InvalidReport(FlagGuardError):
    """Missing, malformed or unknown content id."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_input")


class DuplicateReport(FlagGuardError):
    """The client or its address already reported this content."""

    def __init__(self, message: str):
        super().__init__(message, "duplicate_report")


class MalformedClientToken(FlagGuardError):
    def __init__(self, message: str):
        super().__init__(message, "malformed_token")


class ConfigurationError(FlagGuardError):
    def __init__(self, message: str):
        super().__init__(message, "configuration_error")
