import re
from typing import List, Optional, Sequence

import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from backend.app.core.errors import SynthesisParseFailure
from backend.app.core.prompts import PromptLoader, prompts
from backend.app.core.rate_limiter import TokenBucket, llm_limiter
from backend.app.models.answer import Answer, Citation, RawAnswer, RawCitation
from backend.app.models.conversation import ConversationMessage
from backend.app.models.search import SearchHit, SourceKind
from backend.app.services.llm import invoke_json, parse_json_content
from backend.app.services.planner import history_messages

logger = structlog.get_logger(__name__)

MAIL_LINK = "https://mail.google.com/mail/u/0/#inbox/{message_id}"
CALENDAR_LINK = "https://calendar.google.com/calendar/u/0/r/eventedit/{event_id}"

NO_RESULTS_ANSWER = "I could not find any relevant information to answer your question."
GENERATION_FAILED_ANSWER = "Failed to generate an answer. Please try again."
UNPARSED_CONFIDENCE = 50

_FIRST_INT = re.compile(r"\d+")


def insufficient_answer(text: str = NO_RESULTS_ANSWER) -> Answer:
    return Answer(answer=text, citations=[], confidence=0, insufficient_data=True)


def format_hits(hits: Sequence[SearchHit]) -> str:
    blocks = []
    for index, hit in enumerate(hits, start=1):
        parts = [f"[{index}] Source: {hit.source.value}"]
        if hit.metadata.sender:
            parts.append(f"From: {hit.metadata.sender}")
        if hit.metadata.subject:
            parts.append(f"Subject: {hit.metadata.subject}")
        if hit.metadata.date:
            parts.append(f"Date: {hit.metadata.date}")
        parts.append(f"Content: {hit.content}")
        parts.append(f"ID: {hit.id}")
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks)


def deep_link(hit: SearchHit) -> Optional[str]:
    """Per-kind link template first; the hit's own web link only where no template applies."""
    if hit.source == SourceKind.MAIL and hit.metadata.message_id:
        return MAIL_LINK.format(message_id=hit.metadata.message_id)
    if hit.source == SourceKind.CALENDAR and hit.metadata.event_id:
        return CALENDAR_LINK.format(event_id=hit.metadata.event_id)
    return hit.metadata.web_link


def resolve_hit(citation_id: str, hits: Sequence[SearchHit]) -> Optional[SearchHit]:
    """Exact id first, then the first integer in the id as a 1-based position."""
    for hit in hits:
        if hit.id == citation_id:
            return hit
    match = _FIRST_INT.search(citation_id or "")
    if match:
        position = int(match.group())
        if 1 <= position <= len(hits):
            return hits[position - 1]
    return None


def enrich_citations(raw: Sequence[RawCitation], hits: Sequence[SearchHit]) -> List[Citation]:
    citations = []
    for item in raw:
        hit = resolve_hit(item.id, hits)
        if hit is None:
            citations.append(Citation(source_id=item.id, source=item.source, excerpt=item.content))
            continue
        citations.append(Citation(
            source_id=hit.id,
            source=hit.source.value,
            excerpt=hit.content or item.content,
            deep_link=deep_link(hit),
            message_id=hit.metadata.message_id,
            thread_id=hit.metadata.thread_id,
            event_id=hit.metadata.event_id,
            sender=hit.metadata.sender,
            subject=hit.metadata.subject,
            date=hit.metadata.date,
            recipients=hit.metadata.recipients,
        ))
    return citations


def parse_answer(content: str) -> RawAnswer:
    try:
        return RawAnswer.model_validate(parse_json_content(content))
    except ValueError as e:
        raise SynthesisParseFailure(str(e)) from e


class AnswerSynthesizer:
    def __init__(self, llm, limiter: Optional[TokenBucket] = llm_limiter, prompt_loader: PromptLoader = prompts):
        self.llm = llm
        self.limiter = limiter
        self.prompts = prompt_loader

    def build_messages(self, question: str, hits: Sequence[SearchHit], history: Sequence[ConversationMessage]) -> List[BaseMessage]:
        system = self.prompts.get("synthesizer_system")
        messages: List[BaseMessage] = [SystemMessage(content=system)]
        if history:
            messages.append(SystemMessage(
                content="Earlier messages in this conversation follow. Use them to resolve follow-up references."
            ))
            messages.extend(history_messages(history))
        messages.append(HumanMessage(content=f"Question: {question}\n\nSearch Results:\n{format_hits(hits)}"))
        return messages

    async def synthesize(
        self,
        question: str,
        hits: Sequence[SearchHit],
        history: Sequence[ConversationMessage] = (),
    ) -> Answer:
        if not hits:
            return insufficient_answer()

        content = await invoke_json(self.llm, self.build_messages(question, hits, history), self.limiter)
        if not content:
            logger.warning("synthesis_empty")
            return insufficient_answer(GENERATION_FAILED_ANSWER)

        try:
            raw = parse_answer(content)
        except SynthesisParseFailure as e:
            logger.warning("synthesis_unparsed", error=str(e))
            return Answer(answer=content, citations=[], confidence=UNPARSED_CONFIDENCE, insufficient_data=False)

        answer = Answer(
            answer=raw.answer,
            citations=enrich_citations(raw.citations, hits),
            confidence=round(raw.confidence),
            insufficient_data=raw.insufficient,
        )
        logger.info("answer_synthesized", hits=len(hits), citations=len(answer.citations), confidence=answer.confidence)
        return answer
