from fastapi import APIRouter, FastAPI

from .queue import router as queue_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(queue_router, tags=["queue"])


__all__ = ["include_modular_routers", "APIRouter"]
