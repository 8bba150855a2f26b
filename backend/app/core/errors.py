"""Error hierarchy shared by aggregation and notification code.

Every error carries a stable ``code`` so API handlers and job logs can
report it without parsing messages.
"""


class LineWatchError(Exception):
    code = "LINEWATCH_ERROR"

    def __init__(self, message: str, **metadata):
        self.metadata = metadata
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), **self.metadata}


class ConfigurationError(LineWatchError):
    """Malformed rule or duration configuration. Treated as 'not met'."""
    code = "CONFIGURATION_ERROR"


class TransientInfrastructureError(LineWatchError):
    """Store or scheduler temporarily unavailable; the job should be retried."""
    code = "TRANSIENT_INFRASTRUCTURE"


class EntityNotFoundError(LineWatchError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id, **metadata):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", entity_id=entity_id, **metadata)


class JobNotFoundError(EntityNotFoundError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id, **metadata):
        super().__init__("Job", job_id, **metadata)


class InvalidTokenError(LineWatchError):
    code = "INVALID_TOKEN"


class TokenExpiredError(LineWatchError):
    code = "TOKEN_EXPIRED"
