"""
Evidence endpoints: sources, quotes and quote-to-field links.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Query, status

from witness.api.deps import CurrentUser, DbSession, RecordActor, actor_for
from witness.engines.evidence.evidence_store import EvidenceStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.record import Record
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.schemas.record import (
    QuoteCreate,
    QuoteResponse,
    QuoteUpdate,
    RemovalResponse,
    SourceCreate,
    SourceResponse,
    SourceUpdate,
)

router = APIRouter()


async def _actor_for_record(db, user, record_id: uuid.UUID) -> Actor:
    record = await db.get(Record, record_id)
    return await actor_for(db, user, record.project_id if record else None)


# Sources

@router.get("/records/{record_id}/sources", response_model=List[SourceResponse])
async def list_sources(record_id: uuid.UUID, actor: RecordActor, db: DbSession):
    require_permission(actor, Permission.VIEW, project_id=actor.project_id)
    sources = await EvidenceStore(db).sources_for_record(record_id)
    return [SourceResponse.model_validate(s) for s in sources]


@router.post("/records/{record_id}/sources", response_model=SourceResponse, status_code=status.HTTP_201_CREATED)
async def add_source(record_id: uuid.UUID, data: SourceCreate, actor: RecordActor, db: DbSession):
    source = await EvidenceStore(db).add_source(record_id, actor, **data.model_dump())
    return SourceResponse.model_validate(source)


@router.patch("/sources/{source_id}", response_model=SourceResponse)
async def update_source(source_id: uuid.UUID, data: SourceUpdate, user: CurrentUser, db: DbSession):
    store = EvidenceStore(db)
    source = await store.get_source(source_id)
    actor = await _actor_for_record(db, user, source.record_id)
    source = await store.update_source(source_id, actor, **data.model_dump(exclude_unset=True))
    return SourceResponse.model_validate(source)


@router.delete("/sources/{source_id}", response_model=RemovalResponse)
async def remove_source(source_id: uuid.UUID, user: CurrentUser, db: DbSession):
    """Remove a source. Its quotes stay, detached."""
    store = EvidenceStore(db)
    source = await store.get_source(source_id)
    actor = await _actor_for_record(db, user, source.record_id)
    revoked = await store.remove_source(source_id, actor)
    return RemovalResponse(revoked_fields=revoked)


# Quotes

@router.get("/records/{record_id}/quotes", response_model=List[QuoteResponse])
async def list_quotes(
    record_id: uuid.UUID,
    actor: RecordActor,
    db: DbSession,
    field_slug: Optional[str] = Query(None, description="Only quotes linked to this field"),
    unlinked: bool = Query(False, description="Only quotes linked to no field"),
):
    require_permission(actor, Permission.VIEW, project_id=actor.project_id)
    store = EvidenceStore(db)
    if field_slug:
        quotes = await store.quotes_for_field(record_id, field_slug)
    elif unlinked:
        quotes = await store.unlinked_quotes(record_id)
    else:
        quotes = await store.quotes_for_record(record_id)
    return [QuoteResponse.model_validate(q) for q in quotes]


@router.post("/records/{record_id}/quotes", response_model=QuoteResponse, status_code=status.HTTP_201_CREATED)
async def add_quote(record_id: uuid.UUID, data: QuoteCreate, actor: RecordActor, db: DbSession):
    quote = await EvidenceStore(db).add_quote(record_id, actor, **data.model_dump())
    return QuoteResponse.model_validate(quote)


@router.patch("/quotes/{quote_id}", response_model=QuoteResponse)
async def update_quote(quote_id: uuid.UUID, data: QuoteUpdate, user: CurrentUser, db: DbSession):
    store = EvidenceStore(db)
    quote = await store.get_quote(quote_id)
    actor = await _actor_for_record(db, user, quote.record_id)
    quote = await store.update_quote(quote_id, actor, **data.model_dump(exclude_unset=True))
    return QuoteResponse.model_validate(quote)


@router.delete("/quotes/{quote_id}", response_model=RemovalResponse)
async def remove_quote(quote_id: uuid.UUID, user: CurrentUser, db: DbSession):
    store = EvidenceStore(db)
    quote = await store.get_quote(quote_id)
    actor = await _actor_for_record(db, user, quote.record_id)
    revoked = await store.remove_quote(quote_id, actor)
    return RemovalResponse(revoked_fields=revoked)


@router.put("/quotes/{quote_id}/links/{field_slug}", response_model=QuoteResponse)
async def link_quote(quote_id: uuid.UUID, field_slug: str, user: CurrentUser, db: DbSession):
    """Link a quote to a field. Linking twice is a no-op."""
    store = EvidenceStore(db)
    quote = await store.get_quote(quote_id)
    actor = await _actor_for_record(db, user, quote.record_id)
    quote = await store.link_quote(quote_id, field_slug, actor)
    return QuoteResponse.model_validate(quote)


@router.delete("/quotes/{quote_id}/links/{field_slug}", response_model=QuoteResponse)
async def unlink_quote(quote_id: uuid.UUID, field_slug: str, user: CurrentUser, db: DbSession):
    store = EvidenceStore(db)
    quote = await store.get_quote(quote_id)
    actor = await _actor_for_record(db, user, quote.record_id)
    quote = await store.unlink_quote(quote_id, field_slug, actor)
    return QuoteResponse.model_validate(quote)
