from __future__ import annotations

from fastapi import Request

from scoring.engine import ScoringEngine


def get_scoring_engine(request: Request) -> ScoringEngine:
    return request.app.state.engine
