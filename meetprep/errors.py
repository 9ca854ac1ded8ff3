from typing import Any, Dict, List, Optional


class MeetPrepError(Exception):
    code = "failed"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class InvalidRequestError(MeetPrepError):
    """Malformed or missing input; surfaced before any run starts."""

    code = "invalid_request"


class ToolError(MeetPrepError):
    """A capability failed. Fed back into the conversation, never fatal."""

    code = "tool_error"


class DossierShapeError(ToolError):
    code = "invalid_dossier"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class RunTimeoutError(MeetPrepError):
    code = "timeout"


class TransportError(MeetPrepError):
    """The model endpoint itself failed. Ends the run."""

    code = "failed"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RunCancelledError(MeetPrepError):
    """The caller went away; in-flight calls were abandoned."""

    code = "cancelled"
