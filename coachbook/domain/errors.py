PROBLEM_TYPE_DOMAIN = "https://coachbook.dev/problems/domain-error"


class DomainError(Exception):
    status_code = 400
    default_title = "Domain Error"
    problem_type = PROBLEM_TYPE_DOMAIN

    def __init__(
        self,
        detail: str,
        *,
        title: str | None = None,
        errors: list[dict[str, str]] | None = None,
        type: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.title = title or self.default_title
        self.errors = errors or []
        self.type = type or self.problem_type


class NotFoundError(DomainError):
    status_code = 404
    default_title = "Not Found"
    problem_type = "https://coachbook.dev/problems/not-found"


class InvalidStateError(DomainError):
    status_code = 409
    default_title = "Invalid State"
    problem_type = "https://coachbook.dev/problems/invalid-state"


class UnauthorizedError(DomainError):
    status_code = 403
    default_title = "Forbidden"
    problem_type = "https://coachbook.dev/problems/unauthorized"


class ConflictError(DomainError):
    status_code = 409
    default_title = "Conflict"
    problem_type = "https://coachbook.dev/problems/conflict"


class ValidationError(DomainError):
    status_code = 422
    default_title = "Validation Error"
    problem_type = "https://coachbook.dev/problems/validation-error"


class ProcessorError(DomainError):
    """Payment processor call failed; the detail never carries processor internals."""

    status_code = 502
    default_title = "Payment Processor Error"
    problem_type = "https://coachbook.dev/problems/processor-error"

    def __init__(self, detail: str = "Payment processor unavailable", *, reason: str | None = None) -> None:
        super().__init__(detail)
        self.reason = reason


class SignatureError(DomainError):
    status_code = 400
    default_title = "Invalid Signature"
    problem_type = "https://coachbook.dev/problems/signature-error"

    def __init__(self, detail: str = "Invalid webhook signature") -> None:
        super().__init__(detail)
