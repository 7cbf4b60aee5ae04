from typing import Optional


class GuideError(Exception):
    """Base error for the guide pipeline"""
    status_code = 500


class UpstreamModelError(GuideError):
    """Upstream model service answered with an error or no body"""
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class ContextBuildError(GuideError):
    """Context for a user could not be assembled"""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class RunNotFoundError(GuideError):
    status_code = 404


class RunNotContinuableError(GuideError):
    status_code = 400


class StageExecutionError(GuideError):
    """A pipeline stage raised while executing"""

    def __init__(self, stage: str, message: str, status_code: int = 500):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.reason = message
        self.status_code = status_code


class ArtifactConflictError(GuideError):
    """An artifact for this run and stage was already written"""
    status_code = 409


class ConversationNotFoundError(GuideError):
    status_code = 404
