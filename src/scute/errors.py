"""Error types raised by the session orchestrator."""


class ScuteError(Exception):
    """Base error for all scute errors."""


class BackendError(ScuteError):
    """Raised by a backend when a read or write could not be completed."""


class PresetNotFound(ScuteError):
    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"Preset '{preset_id}' does not exist")


class PresetLocked(ScuteError):
    """Raised when the content of the enforced preset is edited or deleted."""

    def __init__(self, preset_name: str):
        self.preset_name = preset_name
        super().__init__(f"'{preset_name}' is currently blocking and cannot be changed")


class ConflictRejected(ScuteError):
    """Raised when a schedule window collides with another enabled preset."""

    def __init__(self, conflicting_preset_id: str, conflicting_preset_name: str):
        self.conflicting_preset_id = conflicting_preset_id
        self.conflicting_preset_name = conflicting_preset_name
        super().__init__(f"This would overlap with \"{conflicting_preset_name}\"")


class TransitionInFlight(ScuteError):
    """Raised when a session transition is requested while another one runs."""

    message = "Another session transition is already in progress"

    def __init__(self):
        super().__init__(self.message)


class InvalidTransition(ScuteError):
    """Raised when a transition is not allowed from the current session state."""


class StrictModeActive(ScuteError):
    def __init__(self, preset_name: str):
        self.preset_name = preset_name
        super().__init__(
            f"'{preset_name}' is in strict mode; wait for the timer or use an emergency tapout"
        )


class BackendWriteFailed(ScuteError):
    """Raised after a failed backend write has been rolled back locally."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Could not {operation}. Please try again.")


class EnforcementFailed(ScuteError):
    """Raised when the enforcement engine refused or timed out on a command."""

    def __init__(self, command: str, cause: BaseException | None = None):
        self.command = command
        self.cause = cause
        super().__init__(f"Enforcement engine failed to {command}")


class TapoutNotAllowed(ScuteError):
    def __init__(self, preset_name: str | None):
        self.preset_name = preset_name
        super().__init__(f"Emergency tapout is not enabled for '{preset_name}'")


class TapoutExhausted(ScuteError):
    message = "You have no emergency tapouts remaining"

    def __init__(self):
        super().__init__(self.message)


class TapoutConsumeRaced(ScuteError):
    """Raised when the outcome of a tapout consume call is unknown."""

    def __init__(self, cause: BaseException | None = None):
        self.cause = cause
        super().__init__("Emergency tapout could not be confirmed by the server")
