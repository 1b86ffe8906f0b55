#!/usr/bin/env python3

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from circa.routes import api
from circa.configs import OPTIONS, LOG_LEVEL, SCHEDULER_ENABLED
from circa.core import db
from circa.core.api import CirculationAPI
from circa.core.exceptions import (
    CircaError,
    NotFoundError,
    ConflictError,
    StateError,
    LimitExceeded,
    ValidationError,
    ExternalServiceError,
    DatabaseWriteError,
)
from circa import __version__ as VERSION

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_CODES = {
    NotFoundError: 404,
    ConflictError: 409,
    StateError: 409,
    LimitExceeded: 403,
    ValidationError: 422,
    ExternalServiceError: 502,
    DatabaseWriteError: 500,
}


def status_for(error):
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def create_app(circulation=None, scheduler=SCHEDULER_ENABLED):
    circulation = circulation or CirculationAPI()

    @asynccontextmanager
    async def lifespan(app):
        db.init(bind=circulation.db.get_bind())
        sweeps = circulation.scheduler().start() if scheduler else None
        try:
            yield
        finally:
            if sweeps:
                sweeps.stop(timeout=5)

    app = FastAPI(
        title="Circa API",
        description="Circa: circulation, waiting lists and fines for a library",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.api = circulation

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CircaError)
    async def circa_error_handler(request: Request, exc: CircaError):
        code = status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=code, content=jsonable_encoder(exc.to_dict()))

    app.include_router(api.router, prefix="/v1/api")
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("circa.app:app", **OPTIONS)
