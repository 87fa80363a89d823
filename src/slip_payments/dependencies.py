"""FastAPI dependencies shared by the routers."""

import asyncio

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database import get_async_session_factory
from .config import Settings
from .services import PipelineDependencies


def get_pipeline(request: Request) -> PipelineDependencies:
    """Pipeline collaborators built at application startup."""
    return request.app.state.pipeline


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_async_session_factory()


def get_stop_event(request: Request) -> asyncio.Event:
    """Event set on shutdown so running sweeps stop picking up items."""
    return request.app.state.stop_event


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
