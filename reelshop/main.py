import logging

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from reelshop import __version__
from reelshop.api.routes import (
    generic_exception_handler,
    http_exception_handler,
    reelshop_exception_handler,
    router,
    validation_exception_handler,
)
from reelshop.config import get_settings
from reelshop.utils.errors import ReelshopError


def configure_logging() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app() -> FastAPI:
    """Build the API application with routes and error handlers."""
    app = FastAPI(title="Reelshop API", version=__version__)

    app.include_router(router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(ReelshopError, reelshop_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app


configure_logging()
app = create_app()

if __name__ == "__main__":
    uvicorn.run("reelshop.main:app", host="0.0.0.0", port=3000, reload=True)
