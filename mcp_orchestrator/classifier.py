"""
Query classification — decide which tool server answers a question.

QueryClassifier is a pure heuristic: the same text always produces the
same classification. An explicit endpoint path always goes to graph-query.
Otherwise each server kind gets a score and the highest wins; ties are
broken by the fixed priority graph-query > docs > fetch.

RefiningClassifier runs the heuristic first and then lets a langchain chat
model revise the answer. An answer that cannot be used, or a model that
fails outright, leaves the heuristic result in place.

Usage:
    classifier = QueryClassifier()
    result = classifier.classify("How many users do we have?")
    # result.target_server == "graph-query"
    # result.extracted_arguments["path"] == "/users/$count"
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from .errors import ConfigurationError
from .kinds import (
    DEFAULT_SEARCH_URL,
    DocsStrategy,
    FetchStrategy,
    GraphQueryStrategy,
    KindStrategy,
    ServerKind,
    parse_kind,
)

logger = logging.getLogger(__name__)

HEURISTIC = "heuristic"
LLM = "llm"

# Earlier kinds win ties
PRIORITY = (ServerKind.GRAPH_QUERY, ServerKind.DOCS, ServerKind.FETCH)

URL_SCORE = 3.0
PATH_SCORE = 3.0
VERB_ENTITY_SCORE = 2.0
ENTITY_SCORE = 0.5

_URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
_PATH_RE = re.compile(
    r"(?:^|\s)(?:(get|post|put|patch|delete)\s+)?(/[A-Za-z$][\w$./{}'\-]*)",
    re.IGNORECASE,
)
_COUNT_RE = re.compile(r"\b(how many|count|number of)\b", re.IGNORECASE)
_GUEST_RE = re.compile(r"\bguests?\b", re.IGNORECASE)
_TOP_RE = re.compile(r"\b(?:top|first|latest|last)\s+(\d{1,3})\b", re.IGNORECASE)

_RETRIEVAL_RE = re.compile(
    r"\b(list|show|get|find|display|retrieve|enumerate|count|how many|number of|who|which"
    r"|create|add|update|modify|change|delete|remove)\b",
    re.IGNORECASE,
)

# Verb → HTTP method, for queries without an explicit method word
_METHOD_VERBS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b(create|add)\b", re.IGNORECASE), "post"),
    (re.compile(r"\b(update|modify|change)\b", re.IGNORECASE), "patch"),
    (re.compile(r"\b(delete|remove)\b", re.IGNORECASE), "delete"),
]

# Most specific first; the first match decides the endpoint
_ENTITIES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b(sign-?ins?|log-?ins?|sign in activity)\b", re.IGNORECASE), "/auditLogs/signIns"),
    (re.compile(r"\bservice principals?\b", re.IGNORECASE), "/servicePrincipals"),
    (re.compile(r"\bguests?\b", re.IGNORECASE), "/users"),
    (re.compile(r"\b(users?|people|accounts?|employees?)\b", re.IGNORECASE), "/users"),
    (re.compile(r"\bgroups?\b", re.IGNORECASE), "/groups"),
    (re.compile(r"\b(applications?|apps)\b", re.IGNORECASE), "/applications"),
    (re.compile(r"\bdevices?\b", re.IGNORECASE), "/devices"),
    (re.compile(r"\b(e-?mails?|mail|messages|inbox)\b", re.IGNORECASE), "/me/messages"),
    (re.compile(r"\b(calendar|meetings?|events)\b", re.IGNORECASE), "/me/events"),
]

DOCS_VOCABULARY = (
    "authenticate", "authentication", "permission", "permissions", "scope", "scopes",
    "oauth", "token", "consent", "app registration", "directory", "tenant", "entra",
    "azure ad", "graph api", "microsoft", "conditional access", "documentation", "docs",
    "configure", "explain", "how do i", "how to", "how can i", "powershell", "sdk",
)
_DOCS_RE = re.compile(
    r"\b(" + "|".join(re.escape(term) for term in DOCS_VOCABULARY) + r")\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class QueryClassification:
    """Where a query should go and with which arguments."""
    target_server: str
    target_tool: str
    extracted_arguments: dict[str, Any]
    confidence: float
    reasoning: str
    kind: ServerKind
    source: str = HEURISTIC


@dataclass
class _Candidate:
    kind: ServerKind
    score: float = 0.0
    confidence: float = 0.0
    reasoning: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    # Wins outright, whatever the other scores
    decisive: bool = False


def _strip_punctuation(url: str) -> str:
    return url.rstrip(".,;:!?)]}")


class QueryClassifier:
    """
    Deterministic keyword/pattern classifier.

    Args:
        server_names: Which registered server handles each kind. Defaults
                      to a server named after the kind itself.
        search_url: Template for the fetch fallback; ``{query}`` is
                    replaced with the URL-encoded question.
        strategies: Strategies to use instead of the defaults, per kind.
    """

    def __init__(
        self,
        server_names: dict[ServerKind, str] | None = None,
        search_url: str = DEFAULT_SEARCH_URL,
        strategies: dict[ServerKind, KindStrategy] | None = None,
    ):
        self.server_names = {kind: kind.value for kind in PRIORITY}
        self.server_names.update(server_names or {})
        self.strategies: dict[ServerKind, KindStrategy] = {
            ServerKind.GRAPH_QUERY: GraphQueryStrategy(),
            ServerKind.DOCS: DocsStrategy(),
            ServerKind.FETCH: FetchStrategy(search_url),
        }
        self.strategies.update(strategies or {})

    @classmethod
    def from_registry(cls, registry, search_url: str = DEFAULT_SEARCH_URL) -> QueryClassifier:
        """
        Route each kind to the first enabled server of that kind, using the
        strategy the registry resolved for that server. ``search_url`` only
        applies when no fetch server is registered.
        """
        names: dict[ServerKind, str] = {}
        strategies: dict[ServerKind, KindStrategy] = {}
        for descriptor in registry.list_enabled():
            if descriptor.kind not in PRIORITY or descriptor.kind in names:
                continue
            names[descriptor.kind] = descriptor.name
            strategies[descriptor.kind] = registry.strategy(descriptor.name)
        return cls(server_names=names, search_url=search_url, strategies=strategies)

    def classify(self, text: str) -> QueryClassification:
        graph = self._score_graph(text)
        if graph.decisive:
            return self.build(text, graph.kind, graph.details, graph.confidence, graph.reasoning)
        fetch = self._score_fetch(text)
        candidates = [graph, self._score_docs(text), fetch]
        # max() keeps the first of equal scores, and candidates are in priority order
        best = max(candidates, key=lambda c: c.score)
        if best.score <= 0:
            best = fetch
        return self.build(text, best.kind, best.details, best.confidence, best.reasoning)

    def build(
        self,
        text: str,
        kind: ServerKind,
        details: dict[str, Any],
        confidence: float,
        reasoning: str,
        source: str = HEURISTIC,
    ) -> QueryClassification:
        """Turn a chosen kind plus extracted details into a classification."""
        strategy = self.strategies[kind]
        return QueryClassification(
            target_server=self.server_names[kind],
            target_tool=strategy.default_tool,
            extracted_arguments=strategy.build_arguments(text, details),
            confidence=round(max(0.0, min(confidence, 1.0)), 2),
            reasoning=reasoning,
            kind=kind,
            source=source,
        )

    # -- scoring -------------------------------------------------------

    def _score_graph(self, text: str) -> _Candidate:
        candidate = _Candidate(ServerKind.GRAPH_QUERY)
        without_urls = _URL_RE.sub(" ", text)

        match = _PATH_RE.search(without_urls)
        if match:
            method = (match.group(1) or _infer_method(without_urls)).lower()
            path = match.group(2).rstrip(".,;:!?'")
            candidate.score = PATH_SCORE
            candidate.confidence = 0.9
            candidate.details = {"method": method, "path": path}
            candidate.reasoning = f"Explicit endpoint {method.upper()} {path}"
            candidate.decisive = True
            return candidate

        path = None
        for pattern, entity_path in _ENTITIES:
            if pattern.search(without_urls):
                path = entity_path
                break
        if path is None:
            return candidate

        params: dict[str, Any] = {}
        notes = []
        if _GUEST_RE.search(without_urls) and path == "/users":
            params["$filter"] = "userType eq 'Guest'"
            notes.append("guest filter")
        if _COUNT_RE.search(without_urls) and not path.startswith("/me/"):
            path = f"{path}/$count"
            params["ConsistencyLevel"] = "eventual"
            notes.append("count")
        else:
            top = _TOP_RE.search(without_urls)
            if top:
                params["$top"] = int(top.group(1))
                notes.append(f"top {top.group(1)}")

        method = _infer_method(without_urls)
        candidate.details = {"method": method, "path": path}
        if params:
            candidate.details["query_params"] = params

        if _RETRIEVAL_RE.search(without_urls):
            candidate.score = VERB_ENTITY_SCORE
            candidate.confidence = 0.7
            candidate.reasoning = f"Directory data request for {path}"
        else:
            candidate.score = ENTITY_SCORE
            candidate.confidence = 0.5
            candidate.reasoning = f"Mentions directory entities ({path})"
        if params:
            candidate.confidence += 0.1
            candidate.reasoning += f" with {', '.join(notes)}"
        return candidate

    def _score_docs(self, text: str) -> _Candidate:
        candidate = _Candidate(ServerKind.DOCS)
        hits = sorted({m.group(1).lower() for m in _DOCS_RE.finditer(text)})
        if hits:
            candidate.score = float(len(hits))
            candidate.confidence = min(0.55 + 0.15 * len(hits), 0.95)
            candidate.reasoning = f"Documentation/how-to vocabulary: {', '.join(hits)}"
            candidate.details = {"question": text.strip()}
        return candidate

    def _score_fetch(self, text: str) -> _Candidate:
        candidate = _Candidate(ServerKind.FETCH)
        match = _URL_RE.search(text)
        if match:
            url = _strip_punctuation(match.group(0))
            candidate.score = URL_SCORE
            candidate.confidence = 0.9
            candidate.reasoning = f"Explicit URL {url}"
            candidate.details = {"url": url}
        else:
            candidate.confidence = 0.3
            candidate.reasoning = "No directory or documentation signal; falling back to web search"
        return candidate


def _infer_method(text: str) -> str:
    for pattern, method in _METHOD_VERBS:
        if pattern.search(text):
            return method
    return "get"


_DETAIL_TYPES = {"path": str, "method": str, "query_params": dict, "url": str}

REFINER_PROMPT = """You route questions about a Microsoft 365 tenant to one of three tool servers:

- "graph-query": live directory data (users, groups, applications, devices, sign-ins).
  Give "path" (e.g. "/users", "/users/$count"), "method" (lowercase) and
  optional "query_params" (e.g. {{"$filter": "userType eq 'Guest'"}} or
  {{"ConsistencyLevel": "eventual"}} for $count).
- "docs": Microsoft/Azure/Entra/Graph documentation and how-to questions.
- "fetch": anything else; give "url" when the question contains one.

A first-pass classifier suggested:
{suggestion}

Respond ONLY with a JSON object:
{{"server": "graph-query" | "docs" | "fetch", "path": string or null, "method": string or null,
 "query_params": object or null, "url": string or null, "confidence": number (0-1),
 "reasoning": "brief explanation"}}"""


class LLMRefiner:
    """
    Ask a chat model to confirm or correct a heuristic classification.

    Returns None from refine() whenever the model's answer is unusable, so
    the caller can keep the heuristic result.
    """

    def __init__(self, model: BaseChatModel, prompt: str = REFINER_PROMPT):
        self.model = model
        self.prompt = prompt

    def refine(self, text: str, suggestion: QueryClassification,
               classifier: QueryClassifier) -> QueryClassification | None:
        messages = [
            SystemMessage(content=self.prompt.format(suggestion=json.dumps({
                "server": suggestion.kind.value,
                "arguments": suggestion.extracted_arguments,
                "confidence": suggestion.confidence,
            }))),
            HumanMessage(content=f'Analyze this query: "{text}"'),
        ]
        try:
            response = self.model.invoke(messages)
        except Exception as e:
            logger.warning(f"LLM classification request failed: {e}")
            return None

        content = response.content if isinstance(response.content, str) else str(response.content)
        match = re.search(r"\{[\s\S]*\}", content)
        if not match:
            logger.warning(f"No JSON found in LLM classification: {content[:200]}")
            return None
        try:
            answer = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse LLM classification: {e}")
            return None
        if not isinstance(answer, dict):
            return None

        try:
            kind = parse_kind(answer.get("server", ""))
        except ConfigurationError as e:
            logger.warning(f"LLM picked an unusable server: {e}")
            return None
        if kind not in classifier.strategies:
            logger.warning(f"LLM picked a server kind the classifier does not route: {kind.value}")
            return None

        details = {
            key: answer[key]
            for key in ("path", "method", "query_params", "url")
            if answer.get(key)
        }
        for key, value in details.items():
            if not isinstance(value, _DETAIL_TYPES[key]):
                logger.warning(f"LLM gave {key} as {type(value).__name__}: {value!r}")
                return None
        if kind == suggestion.kind and not details:
            details = _details_from_arguments(suggestion)
        try:
            confidence = float(answer.get("confidence", suggestion.confidence))
        except (TypeError, ValueError):
            confidence = suggestion.confidence
        reasoning = str(answer.get("reasoning") or "Refined by language model")
        try:
            return classifier.build(text, kind, details, confidence, reasoning, source=LLM)
        except Exception as e:
            logger.warning(f"Could not build arguments from LLM classification: {e}")
            return None


def _details_from_arguments(classification: QueryClassification) -> dict[str, Any]:
    args = classification.extracted_arguments
    if classification.kind == ServerKind.GRAPH_QUERY:
        details = {"path": args.get("path"), "method": args.get("method")}
        if args.get("queryParams"):
            details["query_params"] = args["queryParams"]
        return details
    if classification.kind == ServerKind.FETCH:
        return {"url": args.get("url")}
    return {}


class RefiningClassifier:
    """Heuristic classification, optionally revised by an LLMRefiner."""

    def __init__(self, classifier: QueryClassifier | None = None, refiner: LLMRefiner | None = None):
        self.classifier = classifier or QueryClassifier()
        self.refiner = refiner

    def classify(self, text: str) -> QueryClassification:
        heuristic = self.classifier.classify(text)
        if self.refiner is None:
            return heuristic
        refined = self.refiner.refine(text, heuristic, self.classifier)
        if refined is None:
            logger.warning("Falling back to heuristic classification")
            return heuristic
        if refined.kind != heuristic.kind:
            logger.info(f"LLM re-routed query from {heuristic.kind.value} to {refined.kind.value}")
        return refined
