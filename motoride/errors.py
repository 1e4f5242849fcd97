"""Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``main`` renders them as ``{"detail": ..., "code": ...}``
with the status code carried by the class.
"""


class MotorideError(Exception):
    status_code = 500
    code = "internal"

    def __init__(self, message: str = "Something went wrong"):
        super().__init__(message)
        self.message = message


class NotFound(MotorideError):
    status_code = 404
    code = "not_found"


class Forbidden(MotorideError):
    status_code = 403
    code = "forbidden"


class SelfReference(Forbidden):
    code = "self_reference"


class InvalidState(MotorideError):
    status_code = 409
    code = "invalid_state"


class Conflict(MotorideError):
    status_code = 409
    code = "conflict"


class PreconditionFailed(MotorideError):
    status_code = 400
    code = "precondition_failed"


class Unauthorized(MotorideError):
    status_code = 401
    code = "unauthorized"


class Internal(MotorideError):
    pass


class RateLimited(MotorideError):
    status_code = 429
    code = "rate_limited"
