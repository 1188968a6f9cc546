"""
Engine Errors

Exception taxonomy for the orchestration engine.

- CapabilityError: the model or embedding capability failed. Recorded on the
  stage that made the call; never raised out of a composer.
- ProtocolError: a caller asked for something the session lifecycle does not
  allow (unknown session, resume of a running session, ...). Raised to the
  caller before any session state is touched.

Governor exhaustion and merge conflicts are not errors: they surface as a
truncation flag and as warnings on the step outcome.
"""


class PipelineError(Exception):
    """Base class for engine errors."""


class CapabilityError(PipelineError):
    """The model or embedding capability failed or timed out."""

    def __init__(self, stage_name: str, cause: Exception):
        self.stage_name = stage_name
        self.cause = cause
        super().__init__(f"{stage_name}: {type(cause).__name__}: {cause}")


class ProtocolError(PipelineError):
    """A request violated the session suspend/resume protocol."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(message)


class SessionNotFoundError(ProtocolError):
    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session not found: {session_id}")


class SessionExistsError(ProtocolError):
    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session already exists: {session_id}")


class SessionNotSuspendedError(ProtocolError):
    def __init__(self, session_id: str, status: str):
        self.status = status
        super().__init__(
            session_id,
            f"Session {session_id} is not awaiting approval (status: {status})",
        )


class SessionBusyError(ProtocolError):
    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session {session_id} is already being executed")


class UnknownInvocationError(ProtocolError):
    def __init__(self, session_id: str, invocation_id: str):
        self.invocation_id = invocation_id
        super().__init__(
            session_id,
            f"No pending tool invocation {invocation_id} in session {session_id}",
        )


class InvalidFeedbackError(ProtocolError):
    """Feedback is malformed or does not match the pending invocation."""
