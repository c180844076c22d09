from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.routes import service as service_routes
from app.security import apply_security_headers
from worker.main import UmzugshilfeService


def create_app(service: UmzugshilfeService, manage_lifecycle: bool = True) -> FastAPI:
    """
    HTTP control surface for a running service.

    With manage_lifecycle the app lifespan starts the browser and mailbox
    watcher and shuts them down on exit; tests pass False to skip that.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.stop()

    app = FastAPI(title="Umzugshilfe Job Bot", lifespan=lifespan)
    app.state.service = service
    app.include_router(service_routes.router)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        apply_security_headers(response)
        return response

    return app
