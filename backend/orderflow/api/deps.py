from fastapi import HTTPException, Request

from orderflow.container import Container
from orderflow.errors import DomainError, ErrorCategory

STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.RULE_VIOLATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.EXHAUSTED: 409,
}


def get_container(request: Request) -> Container:
    return request.app.state.container


def http_error(exc: DomainError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_CATEGORY[exc.category], detail=exc.to_dict())
