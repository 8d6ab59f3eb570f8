"""Middleware registration."""

from fastapi import FastAPI

from classpoints.config import Settings
from classpoints.middleware.error_handler import setup_error_handlers
from classpoints.middleware.logging import setup_logging
from classpoints.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register logging, error handlers and middleware.

    FastAPI/Starlette executes middleware in reverse-add order (last added = outermost).
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
