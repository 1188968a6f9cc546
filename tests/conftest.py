"""
Shared fixtures for the Feedback Analyzer test suite.

No network access: the chat model is replaced by ScriptedModel and the
Bedrock embeddings by KeywordEmbeddings (bag of hashed words), so every
test is deterministic.
"""

import json
import re
import threading
import zlib
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest
from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from feedback_analyzer.engine import RunContext, SimilarityIndex, ToolCallGovernor
from feedback_analyzer.utils import init_db


# ============================================================================
# Test doubles
# ============================================================================

class KeywordEmbeddings(Embeddings):
    """Deterministic embeddings: word counts hashed into DIM buckets."""

    DIM = 256

    def __init__(self):
        self.document_calls = 0
        self.query_calls = 0

    def _embed(self, text: str) -> List[float]:
        vector = [0.0] * self.DIM
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(token.encode("utf-8")) % self.DIM] += 1.0
        return vector

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.document_calls += 1
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        self.query_calls += 1
        return self._embed(text)


Reply = Union[str, AIMessage, Exception]
Script = Union[Sequence[Reply], Callable[[List[BaseMessage], Sequence[Any]], Reply]]


class ScriptedModel:
    """
    ModelCapability test double.

    The reply is picked by the first marker found in the stage instruction.
    A script is either a list of replies (served in order, the last one
    repeats) or a callable taking (history, tools). Exceptions are raised.
    """

    def __init__(self, scripts: Optional[Dict[str, Script]] = None, default: Reply = "ok"):
        self.scripts = dict(scripts or {})
        self.default = default
        self.calls: List[Dict[str, Any]] = []
        self._positions: Counter = Counter()
        self._lock = threading.Lock()

    def calls_for(self, marker: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [call for call in self.calls if marker in call["instruction"]]

    def complete(self, instruction, history, tools=()):
        marker = next((m for m in self.scripts if m in instruction), None)
        with self._lock:
            self.calls.append({
                "instruction": instruction,
                "history": list(history),
                "tools": [tool.name for tool in tools],
            })
            script = self.scripts.get(marker, [self.default])
            if not callable(script):
                position = self._positions[marker]
                self._positions[marker] += 1
                reply = script[min(position, len(script) - 1)]

        if callable(script):
            reply = script(list(history), tools)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return AIMessage(content=reply)
        return reply


def tool_call_reply(name: str, args: Dict[str, Any], call_id: str, text: str = "") -> AIMessage:
    return AIMessage(content=text, tool_calls=[{"name": name, "args": args, "id": call_id}])


def tool_results(history: Sequence[BaseMessage]) -> List[ToolMessage]:
    return [message for message in history if isinstance(message, ToolMessage)]


# ============================================================================
# Ticket analysis pipeline script
# ============================================================================

RECEIVER = "ticket intake assistant"
CLASSIFIER = "ticket classification expert"
ROOT_CAUSE = "root cause analysis expert"
IMPACT = "impact assessment expert"
SOLUTION = "solutions expert"
REPORT = "professional report writer"

CLASSIFICATION_JSON = json.dumps({
    "category": "BUG_REPORT",
    "is_duplicate": True,
    "similar_ticket_ids": ["TICKET-00000001"],
    "key_points": ["crash on login", "Pixel 7"],
})


def classifier_script(history, tools):
    """Search once, then answer with the classification JSON."""
    if not tool_results(history):
        return tool_call_reply(
            "search_similar_tickets",
            {"query": "app crashes on login Pixel 7"},
            "call_search_1",
        )
    return CLASSIFICATION_JSON


def analysis_scripts() -> Dict[str, Script]:
    return {
        RECEIVER: ["User request: app crashes on login. Device: Pixel 7."],
        CLASSIFIER: classifier_script,
        ROOT_CAUSE: ["Null session token after the OAuth redirect."],
        IMPACT: ["P1: every Pixel 7 user on 3.2.0 is locked out."],
        SOLUTION: ["Guard the token refresh and ship a hotfix."],
        REPORT: ["# Report\nLogin crash on Pixel 7, P1, hotfix recommended."],
    }


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def embeddings():
    return KeywordEmbeddings()


@pytest.fixture
def index(embeddings):
    return SimilarityIndex(embeddings)


@pytest.fixture
def governor():
    return ToolCallGovernor(limit=30)


@pytest.fixture
def events():
    """(event_type, node, content, data) tuples recorded by make_context."""
    return []


@pytest.fixture
def make_context(events, governor):
    def factory(model, session_id: str = "session-1", gov: Optional[ToolCallGovernor] = None):
        lock = threading.Lock()

        def emit(event_type, node, content="", **data):
            with lock:
                events.append((event_type, node, content, data))

        return RunContext(
            session_id=session_id,
            model=model,
            governor=gov or governor,
            emit=emit,
        )
    return factory


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()
