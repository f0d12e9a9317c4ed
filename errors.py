class BudgetError(ValueError):
    kind = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(BudgetError):
    kind = "validation"
    status_code = 400


class ForbiddenError(BudgetError):
    kind = "forbidden"
    status_code = 403


class NotFoundError(BudgetError):
    kind = "not_found"
    status_code = 404


class ConsistencyError(BudgetError):
    kind = "consistency"
    status_code = 409


class ConflictError(BudgetError):
    kind = "conflict"
    status_code = 409
