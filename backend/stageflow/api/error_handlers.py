from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging

from stageflow.core.errors import StageflowError

logger = logging.getLogger(__name__)


async def stageflow_exception_handler(request: Request, exc: StageflowError):
    """
    Handle domain errors raised by services and dependencies.
    """
    if exc.status_code >= 500:
        logger.error(f"{exc.reason} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.reason} on {request.url.path}: {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Malformed request bodies and parameters surface as invalid_input (400).
    """
    error_details = [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "invalid_input",
            "message": "Validation error",
            "details": {"errors": error_details},
        }
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": {},
        }
    )
