from fastapi import Request

from chronicle.pipeline import TurnPipeline
from chronicle.storage import JsonStore


def get_store(request: Request) -> JsonStore:
    return request.app.state.store


def get_pipeline(request: Request) -> TurnPipeline:
    return request.app.state.pipeline
