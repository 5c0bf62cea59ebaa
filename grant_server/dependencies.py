"""
FastAPI dependencies for the per-application grant engine built by main.create_app().
"""
from fastapi import Request

from grant_server.grants import GrantEngine


def get_engine(request: Request) -> GrantEngine:
    return request.app.state.engine
