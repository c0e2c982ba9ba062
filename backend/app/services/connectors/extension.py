from typing import Any, List, Optional, Sequence

from backend.app.models.search import DomInstruction, SearchHit, SourceKind
from backend.app.services.connectors.base import SourceConnector
from backend.app.services.normalizer import normalize_snippets


class ExtensionBridgeConnector(SourceConnector):
    """
    A source only the browser extension can read. Nothing is fetched server-side:
    the request gets an instruction for the extension, and results arrive later
    through the dom-results endpoint.
    """
    deferred = True

    def __init__(self, kind: SourceKind):
        self.kind = kind

    async def search(self, credential: Optional[str], query: Any, user_id: str) -> List[Any]:
        return []

    def describe(self, request_id: str, query: Any) -> DomInstruction:
        keywords = list(getattr(query, "keywords", None) or [])
        return DomInstruction(request_id=request_id, source=self.kind, keywords=keywords)

    def normalize(self, records: List[Any]) -> List[SearchHit]:
        return []

    def normalize_report(self, request_id: str, snippets: Sequence[str]) -> List[SearchHit]:
        return normalize_snippets(request_id, self.kind, [s for s in snippets if s and s.strip()])
