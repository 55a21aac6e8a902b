"""
FastAPI dependencies for the roll engine.

The engine and session are created in the application lifespan and stored on
`app.state`; routes receive them through these dependencies.
"""
from fastapi import Request

from roll_engine.core.roll_engine import RollEngine
from roll_engine.core.roll_session import RollSession


async def get_engine(request: Request) -> RollEngine:
    """Dependency for the application's RollEngine."""
    return request.app.state.roll_engine


async def get_roll_session(request: Request) -> RollSession:
    """Dependency for the application's RollSession."""
    return request.app.state.roll_session
