"""
Evidence Store - sources and quotes attached to a record.

Quotes link to field slugs many-to-many through `Quote.linked_fields`. A field
that requires a quote may only stay verified while some linked quote (with a
source URL, when the field demands one) still supports it; every removal
re-checks that and revokes verifications that lost their support.
"""

import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from witness.errors import NotFoundError, StateError, ValidationError
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.event_log import EventType
from witness.kernel.models.evidence import Quote, Source, SourceType
from witness.kernel.models.record import Record, RecordStatus
from witness.kernel.models.schema import FieldDefinition
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.logging_config import get_logger

logger = get_logger(__name__)

SOURCE_ATTRIBUTES = ("url", "title", "source_type", "notes")


def field_is_supported(
    field: FieldDefinition,
    quotes: Iterable[Quote],
    sources_by_id: Dict[uuid.UUID, Source],
) -> bool:
    """
    Whether the evidence on a record is enough for `field` to be verified.

    Fields that do not require a quote are always supported.
    """
    if not field.requires_quote:
        return True
    for quote in quotes:
        if field.slug not in (quote.linked_fields or []):
            continue
        if not field.requires_source_for_quote:
            return True
        source = sources_by_id.get(quote.source_id) if quote.source_id else None
        if source is not None and source.has_url:
            return True
    return False


class EvidenceStore:
    """Service for quotes, sources and quote-to-field links."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)

    # Loading

    async def _get_record(self, record_id: uuid.UUID) -> Record:
        record = await self.session.get(Record, record_id)
        if record is None:
            raise NotFoundError("Record not found", {"record_id": str(record_id)})
        return record

    async def get_quote(self, quote_id: uuid.UUID) -> Quote:
        quote = await self.session.get(Quote, quote_id)
        if quote is None:
            raise NotFoundError("Quote not found", {"quote_id": str(quote_id)})
        return quote

    async def get_source(self, source_id: uuid.UUID) -> Source:
        source = await self.session.get(Source, source_id)
        if source is None:
            raise NotFoundError("Source not found", {"source_id": str(source_id)})
        return source

    async def _editable_record(self, record_id: uuid.UUID, actor: Actor) -> Record:
        record = await self._get_record(record_id)
        require_permission(actor, Permission.MANAGE_RECORDS, project_id=record.project_id)
        if record.status == RecordStatus.REJECTED:
            raise StateError("Evidence on a rejected record cannot change", {"record_id": str(record.id)})
        return record

    # Queries

    async def quotes_for_record(self, record_id: uuid.UUID) -> List[Quote]:
        result = await self.session.execute(
            select(Quote)
            .where(Quote.record_id == record_id)
            .order_by(Quote.sort_order, Quote.created_at)
        )
        return list(result.scalars().all())

    async def sources_for_record(self, record_id: uuid.UUID) -> List[Source]:
        result = await self.session.execute(
            select(Source).where(Source.record_id == record_id).order_by(Source.created_at)
        )
        return list(result.scalars().all())

    async def quotes_for_field(self, record_id: uuid.UUID, field_slug: str) -> List[Quote]:
        return [q for q in await self.quotes_for_record(record_id) if field_slug in (q.linked_fields or [])]

    async def unlinked_quotes(self, record_id: uuid.UUID) -> List[Quote]:
        return [q for q in await self.quotes_for_record(record_id) if not q.linked_fields]

    async def field_definitions(self, record_type_id: uuid.UUID) -> List[FieldDefinition]:
        result = await self.session.execute(
            select(FieldDefinition)
            .where(FieldDefinition.record_type_id == record_type_id)
            .order_by(FieldDefinition.sort_order)
        )
        return list(result.scalars().all())

    async def is_field_supported(self, record: Record, field: FieldDefinition) -> bool:
        quotes = await self.quotes_for_record(record.id)
        sources = {s.id: s for s in await self.sources_for_record(record.id)}
        return field_is_supported(field, quotes, sources)

    # Sources

    async def add_source(
        self,
        record_id: uuid.UUID,
        actor: Actor,
        url: Optional[str] = None,
        title: Optional[str] = None,
        source_type: str = SourceType.OTHER.value,
        notes: Optional[str] = None,
    ) -> Source:
        record = await self._editable_record(record_id, actor)
        source = Source(
            record_id=record.id,
            url=url,
            title=title,
            source_type=self._check_source_type(source_type),
            notes=notes,
            created_by=actor.id,
        )
        self.session.add(source)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.SOURCE_ADDED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"source_id": source.id, "url": url, "project_id": record.project_id},
        )
        return source

    async def update_source(self, source_id: uuid.UUID, actor: Actor, **changes) -> Source:
        source = await self.get_source(source_id)
        record = await self._editable_record(source.record_id, actor)
        unknown = set(changes) - set(SOURCE_ATTRIBUTES)
        if unknown:
            raise ValidationError(
                f"Unknown source attributes: {', '.join(sorted(unknown))}",
                {"unknown": sorted(unknown)},
            )
        if "source_type" in changes:
            changes["source_type"] = self._check_source_type(changes["source_type"])
        for key, value in changes.items():
            setattr(source, key, value)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.SOURCE_UPDATED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"source_id": source.id, "changes": sorted(changes)},
        )
        if "url" in changes:
            await self.revoke_unsupported(record, actor)
        return source

    async def remove_source(self, source_id: uuid.UUID, actor: Actor) -> List[str]:
        """Delete a source, detaching it from its quotes. Returns revoked slugs."""
        source = await self.get_source(source_id)
        record = await self._editable_record(source.record_id, actor)

        result = await self.session.execute(select(Quote).where(Quote.source_id == source.id))
        for quote in result.scalars().all():
            quote.source_id = None
        await self.session.delete(source)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.SOURCE_REMOVED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"source_id": source_id},
        )
        return await self.revoke_unsupported(record, actor)

    @staticmethod
    def _check_source_type(source_type: str) -> str:
        try:
            return SourceType(source_type).value
        except ValueError:
            raise ValidationError(
                f"Unknown source type: {source_type}",
                {"allowed": [t.value for t in SourceType]},
            )

    # Quotes

    async def add_quote(
        self,
        record_id: uuid.UUID,
        actor: Actor,
        text: str,
        source_id: Optional[uuid.UUID] = None,
        linked_fields: Optional[List[str]] = None,
    ) -> Quote:
        record = await self._editable_record(record_id, actor)
        if not text or not text.strip():
            raise ValidationError("Quote text is required")
        if source_id is not None:
            await self._check_source_on_record(source_id, record.id)
        slugs = list(dict.fromkeys(linked_fields or []))
        if slugs:
            await self._check_slugs(record, slugs)

        count = len(await self.quotes_for_record(record.id))
        quote = Quote(
            record_id=record.id,
            source_id=source_id,
            text=text,
            linked_fields=slugs,
            sort_order=count,
            created_by=actor.id,
        )
        self.session.add(quote)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.QUOTE_ADDED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"quote_id": quote.id, "linked_fields": slugs, "source_id": source_id},
        )
        return quote

    async def update_quote(
        self,
        quote_id: uuid.UUID,
        actor: Actor,
        text: Optional[str] = None,
        source_id: Optional[uuid.UUID] = None,
        clear_source: bool = False,
    ) -> Quote:
        quote = await self.get_quote(quote_id)
        record = await self._editable_record(quote.record_id, actor)
        if text is not None:
            if not text.strip():
                raise ValidationError("Quote text is required")
            quote.text = text
        source_changed = False
        if clear_source:
            source_changed = quote.source_id is not None
            quote.source_id = None
        elif source_id is not None and source_id != quote.source_id:
            await self._check_source_on_record(source_id, record.id)
            quote.source_id = source_id
            source_changed = True
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.QUOTE_UPDATED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"quote_id": quote.id, "source_id": quote.source_id},
        )
        if source_changed:
            await self.revoke_unsupported(record, actor)
        return quote

    async def remove_quote(self, quote_id: uuid.UUID, actor: Actor) -> List[str]:
        """Delete a quote and every link it carried. Returns revoked slugs."""
        quote = await self.get_quote(quote_id)
        record = await self._editable_record(quote.record_id, actor)
        linked = list(quote.linked_fields or [])
        await self.session.delete(quote)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.QUOTE_REMOVED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"quote_id": quote_id, "linked_fields": linked},
        )
        return await self.revoke_unsupported(record, actor)

    async def link_quote(self, quote_id: uuid.UUID, field_slug: str, actor: Actor) -> Quote:
        """Link a quote to a field. Linking twice is a no-op."""
        quote = await self.get_quote(quote_id)
        record = await self._editable_record(quote.record_id, actor)
        await self._check_slugs(record, [field_slug])

        current = list(quote.linked_fields or [])
        if field_slug in current:
            return quote
        quote.linked_fields = current + [field_slug]
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.QUOTE_LINKED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"quote_id": quote.id, "field_slug": field_slug},
        )
        logger.info(
            "Quote linked",
            extra={"record_id": str(record.id), "quote_id": str(quote.id), "field_slug": field_slug},
        )
        return quote

    async def unlink_quote(self, quote_id: uuid.UUID, field_slug: str, actor: Actor) -> Quote:
        """Remove a quote-to-field link. Unlinking an absent link is a no-op."""
        quote = await self.get_quote(quote_id)
        record = await self._editable_record(quote.record_id, actor)

        current = list(quote.linked_fields or [])
        if field_slug not in current:
            return quote
        quote.linked_fields = [slug for slug in current if slug != field_slug]
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.QUOTE_UNLINKED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"quote_id": quote.id, "field_slug": field_slug},
        )
        await self.revoke_unsupported(record, actor)
        return quote

    async def _check_source_on_record(self, source_id: uuid.UUID, record_id: uuid.UUID) -> None:
        source = await self.session.get(Source, source_id)
        if source is None or source.record_id != record_id:
            raise ValidationError("Source does not belong to this record", {"source_id": str(source_id)})

    async def _check_slugs(self, record: Record, slugs: List[str]) -> None:
        result = await self.session.execute(
            select(FieldDefinition.slug).where(
                and_(
                    FieldDefinition.record_type_id == record.record_type_id,
                    FieldDefinition.slug.in_(slugs),
                )
            )
        )
        known = set(result.scalars().all())
        missing = [s for s in slugs if s not in known]
        if missing:
            raise ValidationError(
                f"Unknown field: {', '.join(missing)}",
                {"fields": missing},
            )

    # Verification revocation

    async def revoke_unsupported(
        self,
        record: Record,
        actor: Optional[Actor],
        reason: str = "evidence_removed",
    ) -> List[str]:
        """
        Drop field verifications no longer backed by evidence.

        Returns the slugs whose verification was revoked.
        """
        verified = {
            slug for slug, entry in (record.verified_fields or {}).items()
            if isinstance(entry, dict) and entry.get("verified")
        }
        if not verified:
            return []

        fields = {f.slug: f for f in await self.field_definitions(record.record_type_id)}
        quotes = await self.quotes_for_record(record.id)
        sources = {s.id: s for s in await self.sources_for_record(record.id)}

        revoked = sorted(
            slug for slug in verified
            if slug in fields and not field_is_supported(fields[slug], quotes, sources)
        )
        if not revoked:
            return []

        record.verified_fields = {
            slug: entry for slug, entry in record.verified_fields.items() if slug not in revoked
        }
        await self.session.flush()

        for slug in revoked:
            await self.event_store.log(
                event_type=EventType.FIELD_VERIFICATION_REVOKED,
                entity_type="record",
                entity_id=record.id,
                user_id=actor.id if actor else None,
                payload={"field_slug": slug, "reason": reason},
            )
        logger.info(
            "Field verifications revoked",
            extra={"record_id": str(record.id), "fields": revoked, "reason": reason},
        )
        return revoked
