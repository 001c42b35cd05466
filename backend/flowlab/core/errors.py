"""
Error taxonomy for the experiment runtime

Compiler and PRNG failures are raised synchronously to the caller.
Remote-mode failures surface as TransportError and never leave a run
partially advanced. Event delivery failures are reported, never raised.
"""
from typing import List, Optional


class FlowlabError(Exception):
    """Base class for all runtime errors"""


class ValidationError(FlowlabError):
    """Malformed or invalid flow document. Carries every violation found."""
    
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors)
        super().__init__(f"Config validation failed ({len(self.errors)} errors): {summary}")


class UnknownNodeError(FlowlabError):
    """An edge or navigation target that is not present in the graph"""
    
    def __init__(self, node_id: Optional[str], detail: Optional[str] = None):
        self.node_id = node_id
        message = f"Unknown node: {node_id!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class AssignmentConfigError(FlowlabError):
    """Empty condition set or unknown assignment strategy"""


class TransportError(FlowlabError):
    """Remote session service could not be reached or rejected the request"""
    
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class EventDeliveryError(FlowlabError):
    """An event could not be delivered to its sink"""
    
    def __init__(self, event_type: str, cause: BaseException):
        self.event_type = event_type
        self.cause = cause
        super().__init__(f"Failed to deliver '{event_type}' event: {cause}")


class SessionNotFoundError(FlowlabError):
    """No persisted session with the given id"""
    
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionBlockedError(FlowlabError):
    """Participant already completed the experiment and retakes are not allowed"""
    
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("You have already completed this experiment.")


class ConfigNotFoundError(FlowlabError):
    """No compiled config stored under the given id"""
    
    def __init__(self, config_id: str):
        self.config_id = config_id
        super().__init__(f"Config not found: {config_id}")
