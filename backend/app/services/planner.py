import re
from datetime import date
from typing import List, Optional, Sequence

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from backend.app.core.config import settings
from backend.app.core.errors import PlanningFailure
from backend.app.core.prompts import PromptLoader, prompts
from backend.app.core.rate_limiter import TokenBucket, llm_limiter
from backend.app.models.conversation import ConversationMessage
from backend.app.models.flags import FeatureFlags
from backend.app.models.plan import ArchiveQuery, CalendarQuery, ExtensionQuery, MailQuery, QueryPlan
from backend.app.models.search import SourceKind
from backend.app.services.connectors.gmail import ensure_recency_floor
from backend.app.services.llm import invoke_json, parse_json_content

logger = structlog.get_logger(__name__)

_WORD = re.compile(r"[\w@.'-]+")


def fallback_keywords(question: str) -> List[str]:
    """Content words of the question, used when the model asked for a source but gave no terms."""
    words = [w.strip(".'-") for w in _WORD.findall(question)]
    return [w for w in words if len(w) > 2] or [question.strip()]


def allowed_extension_kinds(flags: FeatureFlags) -> List[SourceKind]:
    kinds = []
    if flags.enable_linkedin:
        kinds.append(SourceKind.EXTENSION_LINKEDIN)
    if flags.enable_whatsapp:
        kinds.append(SourceKind.EXTENSION_WHATSAPP)
    return kinds


def apply_flags(plan: QueryPlan, flags: FeatureFlags, question: str) -> QueryPlan:
    """
    Forces disabled sources off and fills in parameters the model left out for
    sources it did ask for. The mail query always leaves with a recency floor.
    """
    needs_mail = plan.needs_mail and flags.enable_mail
    mail = None
    if needs_mail:
        base = plan.mail or MailQuery(query=question)
        mail = MailQuery(query=ensure_recency_floor(base.query or question), max_results=base.max_results)

    calendar = (plan.calendar or CalendarQuery()) if plan.needs_calendar else None

    needs_archive = plan.needs_message_archive and flags.enable_whatsapp
    archive = None
    if needs_archive:
        archive = plan.message_archive or ArchiveQuery()
        if not archive.keywords:
            archive = archive.model_copy(update={"keywords": fallback_keywords(question)})

    allowed = allowed_extension_kinds(flags)
    extension = None
    if plan.needs_extension_source and allowed:
        requested = plan.extension.sources if plan.extension and plan.extension.sources else allowed
        sources = [k for k in dict.fromkeys(requested) if k in allowed]
        keywords = (plan.extension.keywords if plan.extension else None) or [question]
        if sources:
            extension = ExtensionQuery(sources=sources, keywords=keywords)

    return QueryPlan(
        needs_mail=needs_mail,
        needs_calendar=plan.needs_calendar,
        needs_message_archive=needs_archive,
        needs_extension_source=extension is not None,
        mail=mail,
        calendar=calendar,
        message_archive=archive,
        extension=extension,
    )


def _source_rules(flags: FeatureFlags) -> str:
    rules = []
    if flags.enable_mail:
        rules.append("- mail: the user's email (Gmail).")
    else:
        rules.append("- mail: DISABLED. needsMail must be false.")
    rules.append("- calendar: the user's meetings and events.")
    if flags.enable_whatsapp:
        rules.append("- messageArchive: synced chat history (WhatsApp).")
    else:
        rules.append("- messageArchive: DISABLED. needsMessageArchive must be false.")
    extension = allowed_extension_kinds(flags)
    if extension:
        names = ", ".join(k.value.replace("extension-", "") for k in extension)
        rules.append(f"- extension: live search through the browser extension ({names}).")
    else:
        rules.append("- extension: DISABLED. needsExtensionSource must be false.")
    return "\n".join(rules)


def history_messages(history: Sequence[ConversationMessage]) -> List[BaseMessage]:
    return [
        HumanMessage(content=m.content) if m.role == "user" else AIMessage(content=m.content)
        for m in history
    ]


class QueryPlanner:
    def __init__(self, llm, limiter: Optional[TokenBucket] = llm_limiter, prompt_loader: PromptLoader = prompts):
        self.llm = llm
        self.limiter = limiter
        self.prompts = prompt_loader

    def build_messages(self, question: str, history: Sequence[ConversationMessage], flags: FeatureFlags, today: date) -> List[BaseMessage]:
        system = self.prompts.get(
            "query_planner",
            today=today.isoformat(),
            source_rules=_source_rules(flags),
            recency_days=settings.MAIL_RECENCY_DAYS,
        )
        return [SystemMessage(content=system), *history_messages(history), HumanMessage(content=question)]

    async def plan(
        self,
        question: str,
        history: Sequence[ConversationMessage],
        flags: FeatureFlags,
        today: Optional[date] = None,
    ) -> QueryPlan:
        messages = self.build_messages(question, history, flags, today or date.today())
        content = await invoke_json(self.llm, messages, self.limiter)
        if not content:
            raise PlanningFailure("Failed to analyze query")

        try:
            raw_plan = QueryPlan.model_validate(parse_json_content(content))
        except ValueError as e:
            # json and pydantic errors are both ValueErrors
            logger.error("plan_unparseable", error=str(e))
            raise PlanningFailure("Failed to analyze query")

        plan = apply_flags(raw_plan, flags, question)
        logger.info(
            "query_planned",
            query_length=len(question),
            sources=[k.value for k in plan.requested_sources()],
        )
        return plan
