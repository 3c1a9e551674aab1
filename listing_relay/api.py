"""FastAPI application exposing the listing outbox to downstream indexers."""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import FastAPI, Query
from pydantic import BaseModel, Field

from .storage import ListingRepository


class HealthResponse(BaseModel):
    status: str


class OutboxEntryResponse(BaseModel):
    id: int
    topic: str
    listing_id: str
    event_id: str
    payload: Dict[str, Any]
    created_at: int


class OutboxPage(BaseModel):
    entries: List[OutboxEntryResponse]
    next_after: int


class AckRequest(BaseModel):
    up_to: int = Field(ge=0, description="Highest outbox id the consumer has processed")


class AckResponse(BaseModel):
    acknowledged: int


def create_app(repository: ListingRepository) -> FastAPI:
    app = FastAPI(title="Listing Relay Outbox", version="1.0.0")
    app.state.repository = repository

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/outbox", response_model=OutboxPage)
    def read_outbox(
        after: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> OutboxPage:
        entries = [OutboxEntryResponse(**row) for row in repository.fetch_outbox(after, limit)]
        next_after = entries[-1].id if entries else after
        return OutboxPage(entries=entries, next_after=next_after)

    @app.post("/outbox/ack", response_model=AckResponse)
    def ack_outbox(payload: AckRequest) -> AckResponse:
        return AckResponse(acknowledged=repository.ack_outbox(payload.up_to))

    return app


__all__ = ["create_app"]
