"""Error taxonomy shared by the lifecycle and planning operations."""


class MissionControlError(Exception):
    """Base class for errors surfaced to callers."""


class ValidationError(MissionControlError):
    """Raised for bad caller input. No side effects have happened."""


class NotFound(MissionControlError):
    """Raised when a task or agent does not exist."""


class Conflict(MissionControlError):
    """Raised when the requested operation conflicts with current state."""


class SessionChanged(Conflict):
    """Raised when a planning write finds the session cancelled, restarted or advanced."""


class AlreadyStarted(Conflict):
    """Raised when planning is started twice for the same task."""

    def __init__(self, task_id: str, session_key: str):
        super().__init__(f"Planning already started for task '{task_id}' ({session_key})")
        self.session_key = session_key


class OrchestratorConflict(Conflict):
    """Raised when other master agents are online in the task's workspace."""

    def __init__(self, names: list[str]):
        count = len(names)
        verb = "is" if count == 1 else "are"
        plural = "" if count == 1 else "s"
        super().__init__(
            f"There {verb} {count} other orchestrator{plural} available in this "
            f"workspace: {', '.join(names)}. Assign this task to them directly."
        )
        self.names = names


class NotStarted(Conflict):
    """Raised when answering a planning session that was never started."""


class AlreadyComplete(Conflict):
    """Raised when answering a planning session that has already completed."""


class RoundLimitExceeded(Conflict):
    """Raised when the remote agent keeps asking past the round budget."""


class Forbidden(MissionControlError):
    """Raised when a non-master agent tries to approve completed work."""


class ReplyTimeout(MissionControlError):
    """Raised when no assistant reply arrives before the deadline."""


class ReplyCancelled(MissionControlError):
    """Raised when the caller abandons a wait for a reply."""


class TransportError(MissionControlError):
    """Raised when the agent runtime cannot be reached or rejects a call."""
