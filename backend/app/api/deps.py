"""Shared API dependencies."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import async_session_factory, get_db
from app.services.job_queue import JobQueue


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_factory


def get_job_queue(request: Request) -> JobQueue:
    """The queue created by the application lifespan."""
    return request.app.state.job_queue


__all__ = ["get_db", "get_job_queue", "get_session_factory"]
