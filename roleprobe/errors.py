"""
Error taxonomy
==============
Pool-level and configuration errors abort a run. Everything else is caught
at the role/path/payload/test level and turned into a result record.
"""


class RoleProbeError(Exception):
    """Base class for all roleprobe errors"""


class ConfigurationError(RoleProbeError):
    """Invalid profile or settings (fatal)"""


class SessionUnavailable(RoleProbeError):
    """Unknown role, closed pool or failed session bootstrap (fatal)"""

    def __init__(self, role: str, reason: str = ""):
        self.role = role
        self.reason = reason
        super().__init__(f"Session unavailable for role '{role}': {reason}" if reason
                         else f"Session unavailable for role '{role}'")


class NavigationError(RoleProbeError):
    """A single navigation/fill/submit step failed (retryable)"""

    def __init__(self, url: str, message: str = ""):
        self.url = url
        super().__init__(f"{url}: {message}" if message else url)


class NavigationTimeout(NavigationError):
    """Navigation exceeded its per-attempt timeout (retryable)"""

    def __init__(self, url: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(url, f"timed out after {timeout_ms}ms")


class ProbeFailure(RoleProbeError):
    """All retries exhausted for one probe"""

    def __init__(self, url: str, attempts: int, last_error: Exception = None):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{url}: failed after {attempts} attempt(s): {last_error}")


class DetectionAmbiguous(RoleProbeError):
    """A signal was seen but is too weak to call the target vulnerable"""

    def __init__(self, category: str, signal: str):
        self.category = category
        self.signal = signal
        super().__init__(f"Ambiguous {category} signal: {signal}")


FATAL_ERRORS = (SessionUnavailable, ConfigurationError)
