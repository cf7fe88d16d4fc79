"""Translate domain errors into JSON responses."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from fluzio_points.services.errors import PointsError


async def points_error_handler(request: Request, exc: PointsError) -> JSONResponse:
    logger.bind(context=exc.context).info(
        "Request rejected",
        path=request.url.path,
        error=exc.code,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PointsError, points_error_handler)
