"""Version 1 API routers."""

from fastapi import APIRouter

from . import auth, people

api_router = APIRouter()
api_router.include_router(auth.router)
api_router.include_router(people.router)

__all__ = ["api_router"]
