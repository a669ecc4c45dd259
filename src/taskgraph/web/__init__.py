"""taskgraph HTTP interface: FastAPI app factory."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import InvariantError, NotFoundError, TaskGraphError, ValidationError
from ..graph import TaskGraph


def _error_response(exc: TaskGraphError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        return JSONResponse(
            status_code=404,
            content={
                "error": {
                    "code": "not_found",
                    "message": str(exc),
                    "entity": exc.entity,
                    "ids": [exc.entity_id],
                }
            },
        )
    if isinstance(exc, InvariantError):
        return JSONResponse(status_code=409, content={"error": exc.to_dict()})
    code = "validation_error" if isinstance(exc, ValidationError) else "invalid_request"
    return JSONResponse(
        status_code=422,
        content={"error": {"code": code, "message": str(exc), "ids": []}},
    )


def create_app(graph: TaskGraph | None = None) -> FastAPI:
    app = FastAPI(title="taskgraph", version=__version__)
    app.state.graph = graph if graph is not None else TaskGraph.from_workdir()

    @app.exception_handler(TaskGraphError)
    async def _taskgraph_error(request: Request, exc: TaskGraphError) -> JSONResponse:
        return _error_response(exc)

    from .routes import router

    app.include_router(router)

    return app
