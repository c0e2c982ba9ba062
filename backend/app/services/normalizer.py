"""
Maps every connector's native records onto SearchHit and merges the per-source lists.
Scores are declared per source kind; there is no learned ranking.
"""
from typing import Dict, List, Sequence

from backend.app.models.records import ArchiveThread, CalendarEvent, MailMessage
from backend.app.models.search import HitMetadata, SearchHit, SourceKind

DEFAULT_SCORES: Dict[SourceKind, float] = {
    SourceKind.MAIL: 1.0,
    SourceKind.MESSAGE_ARCHIVE: 1.0,
    SourceKind.EXTENSION_LINKEDIN: 0.9,
    SourceKind.EXTENSION_WHATSAPP: 0.9,
    SourceKind.CALENDAR: 0.8,  # context, secondary to conversations
}


def normalize_mail(messages: Sequence[MailMessage]) -> List[SearchHit]:
    return [
        SearchHit(
            id=msg.id or f"mail-{index}",
            source=SourceKind.MAIL,
            content=msg.snippet,
            metadata=HitMetadata(
                sender=msg.sender or None,
                recipients=msg.to or None,
                subject=msg.subject or None,
                date=msg.date or None,
                message_id=msg.id or None,
                thread_id=msg.thread_id or None,
            ),
            relevance_score=DEFAULT_SCORES[SourceKind.MAIL],
        )
        for index, msg in enumerate(messages)
    ]


def normalize_calendar(events: Sequence[CalendarEvent]) -> List[SearchHit]:
    return [
        SearchHit(
            id=event.id or f"calendar-{index}",
            source=SourceKind.CALENDAR,
            content=f"{event.title} - {event.start}",
            metadata=HitMetadata(
                subject=event.title,
                date=event.start or None,
                attendees=list(event.attendees),
                event_id=event.id or None,
                web_link=event.html_link,
            ),
            relevance_score=DEFAULT_SCORES[SourceKind.CALENDAR],
        )
        for index, event in enumerate(events)
    ]


def normalize_archive(threads: Sequence[ArchiveThread]) -> List[SearchHit]:
    return [
        SearchHit(
            id=thread.primary.id,
            source=SourceKind.MESSAGE_ARCHIVE,
            content=thread.transcript(),
            metadata=HitMetadata(
                sender=thread.primary.sender,
                subject=thread.title,
                date=thread.primary.timestamp.isoformat(),
                thread_id=thread.primary.conversation_id,
            ),
            relevance_score=DEFAULT_SCORES[SourceKind.MESSAGE_ARCHIVE],
        )
        for thread in threads
    ]


def normalize_snippets(request_id: str, source: SourceKind, snippets: Sequence[str]) -> List[SearchHit]:
    """Bridge results carry bare text; ids are scoped to the request so they stay unique."""
    return [
        SearchHit(
            id=f"{request_id}-{source.value}-{index}",
            source=source,
            content=snippet,
            relevance_score=DEFAULT_SCORES.get(source, 0.9),
        )
        for index, snippet in enumerate(snippets)
    ]


def merge_hits(*hit_lists: Sequence[SearchHit]) -> List[SearchHit]:
    """Concatenate in the given source order, then stable-sort by score (highest first).
    Duplicates across sources are kept on purpose."""
    merged = [hit for hits in hit_lists for hit in hits]
    return sorted(merged, key=lambda hit: hit.relevance_score, reverse=True)
