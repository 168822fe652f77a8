import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import close_db_connections
from services.dependencies import ServiceContainer, build_container
from services.errors import MemoryServiceError
from services import admin_router, memory_router, posts_router, search_router
from api import routes_chat

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container()
        logger.info("Memory API started")
        yield
        if app.state.container.index is not None:
            app.state.container.index.close()
        close_db_connections()

    app = FastAPI(
        title="Memory Vault",
        docs_url=None if settings.is_production else "/docs",
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.cors_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MemoryServiceError)
    async def memory_service_error_handler(request: Request, exc: MemoryServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: [{exc.kind.value}] {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    async def health(request: Request):
        services: ServiceContainer = request.app.state.container
        index = services.index
        return {
            "status": "ok",
            "database": services.db.health_check(),
            "embeddings_model": services.embeddings.model_id,
            "vector_index": index.name if index is not None else None,
            "vector_index_available": bool(index is not None and index.available),
        }

    app.include_router(memory_router.router)
    app.include_router(posts_router.router)
    app.include_router(search_router.router)
    app.include_router(admin_router.router)
    app.include_router(routes_chat.router)
    return app


app = create_app()
