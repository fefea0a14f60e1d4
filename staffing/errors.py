class LifecycleError(Exception):
    """Base for errors a transition reports back to its caller."""

    kind = "error"
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFound(LifecycleError):
    kind = "not_found"
    status_code = 404


class Forbidden(LifecycleError):
    kind = "forbidden"
    status_code = 403


class InvalidTransition(LifecycleError):
    kind = "invalid_transition"
    status_code = 409


class Conflict(LifecycleError):
    kind = "conflict"
    status_code = 409


class InvalidInput(LifecycleError):
    kind = "invalid_input"
    status_code = 422
