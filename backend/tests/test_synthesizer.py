import pytest

from backend.app.models.answer import RawCitation
from backend.app.models.conversation import ConversationMessage
from backend.app.models.search import SourceKind
from backend.app.services.synthesizer import (
    GENERATION_FAILED_ANSWER,
    AnswerSynthesizer,
    enrich_citations,
    format_hits,
)
from backend.tests.fakes import FakeLLM, answer_json, make_hit

MAIL_HIT = make_hit(
    "m1", SourceKind.MAIL, 1.0, content="Invoice #42 attached",
    sender="Bob <bob@x.com>", subject="Invoice", date="Mon, 5 Jan 2026", message_id="m1", thread_id="t1",
    recipients="me@x.com",
)
CALENDAR_HIT = make_hit("e1", SourceKind.CALENDAR, 0.8, content="Review - 2026-01-06", event_id="e1", subject="Review")


@pytest.mark.asyncio
async def test_no_hits_short_circuits_without_llm():
    llm = FakeLLM(answer_json())
    answer = await AnswerSynthesizer(llm, limiter=None).synthesize("anything?", [])

    assert answer.confidence == 0
    assert answer.insufficient_data is True
    assert answer.citations == []
    assert answer.confidence_level == "insufficient"
    assert llm.calls == []


@pytest.mark.asyncio
async def test_answer_is_enriched_with_deep_links():
    llm = FakeLLM(answer_json(
        answer="Bob sent the invoice [1] before the review [2].",
        citations=[{"source": "mail", "content": "inv", "id": "m1"}, {"source": "calendar", "content": "r", "id": "2"}],
        confidence=85,
    ))
    answer = await AnswerSynthesizer(llm, limiter=None).synthesize("invoice?", [MAIL_HIT, CALENDAR_HIT])

    mail, calendar = answer.citations
    assert mail.source_id == "m1"
    assert mail.deep_link == "https://mail.google.com/mail/u/0/#inbox/m1"
    assert mail.sender == "Bob <bob@x.com>"
    assert mail.recipients == "me@x.com"
    assert mail.excerpt == "Invoice #42 attached"
    assert calendar.source_id == "e1"
    assert calendar.deep_link == "https://calendar.google.com/calendar/u/0/r/eventedit/e1"
    assert answer.confidence_level == "high"
    assert answer.source_breakdown == {"mail": 1, "calendar": 1}


def test_unresolved_citation_passes_through():
    [citation] = enrich_citations([RawCitation(source="mail", content="quoted", id="ghost")], [MAIL_HIT])
    assert citation.source_id == "ghost"
    assert citation.excerpt == "quoted"
    assert citation.deep_link is None


def test_position_fallback_uses_first_integer():
    [citation] = enrich_citations([RawCitation(id="result-2")], [MAIL_HIT, CALENDAR_HIT])
    assert citation.source_id == "e1"


def test_out_of_range_position_is_unresolved():
    [citation] = enrich_citations([RawCitation(id="7")], [MAIL_HIT])
    assert citation.source_id == "7"


def test_calendar_link_uses_event_edit_template_over_html_link():
    hit = make_hit("ev1", SourceKind.CALENDAR, event_id="ev1", web_link="https://www.google.com/calendar/event?eid=abc")
    [citation] = enrich_citations([RawCitation(id="ev1")], [hit])
    assert citation.deep_link == "https://calendar.google.com/calendar/u/0/r/eventedit/ev1"


def test_web_link_is_used_when_kind_has_no_template():
    hit = make_hit("l1", SourceKind.EXTENSION_LINKEDIN, web_link="https://www.linkedin.com/messaging/thread/1")
    [citation] = enrich_citations([RawCitation(id="l1")], [hit])
    assert citation.deep_link == "https://www.linkedin.com/messaging/thread/1"


@pytest.mark.asyncio
async def test_unparseable_output_degrades_to_raw_text():
    llm = FakeLLM("Bob sent it on Monday.")
    answer = await AnswerSynthesizer(llm, limiter=None).synthesize("q", [MAIL_HIT])

    assert answer.answer == "Bob sent it on Monday."
    assert answer.citations == []
    assert answer.confidence == 50
    assert answer.insufficient_data is False


@pytest.mark.asyncio
async def test_empty_output_is_a_failed_generation():
    answer = await AnswerSynthesizer(FakeLLM(""), limiter=None).synthesize("q", [MAIL_HIT])
    assert answer.answer == GENERATION_FAILED_ANSWER
    assert answer.confidence == 0
    assert answer.insufficient_data is True


@pytest.mark.asyncio
async def test_full_history_is_sent_verbatim():
    llm = FakeLLM(answer_json())
    history = [
        ConversationMessage(role="user", content=f"turn {i}") if i % 2 == 0
        else ConversationMessage(role="assistant", content=f"reply {i}")
        for i in range(10)
    ]
    await AnswerSynthesizer(llm, limiter=None).synthesize("and him?", [MAIL_HIT], history)

    sent = [m.content for m in llm.calls[0]]
    assert sent[2:12] == [m.content for m in history]
    assert sent[-1].startswith("Question: and him?")
    assert "[1] Source: mail" in sent[-1]


def test_format_hits_numbers_from_one():
    text = format_hits([MAIL_HIT, CALENDAR_HIT])
    assert text.startswith("[1] Source: mail\nFrom: Bob <bob@x.com>\nSubject: Invoice\nDate: Mon, 5 Jan 2026")
    assert "\n\n[2] Source: calendar\nSubject: Review\nContent: Review - 2026-01-06\nID: e1" in text
