"""Shared fixtures: a scripted chat agent, sample feedback and a fresh event bus."""
import json
import re
from datetime import datetime, timezone

import pytest

from src.events.event_bus import PipelineEventBus
from src.models.schemas import EnrichedFeedbackItem, FeedbackItem, ProductArea, UserMetadata

_FEEDBACK_ID_RE = re.compile(r"^ID: (\S+)$", re.MULTILINE)
_THEME_RE = re.compile(r"^Theme: (.+)$", re.MULTILINE)


def feedback_id_in(prompt: str) -> str:
    """The feedback id an enrichment prompt asks about."""
    return _FEEDBACK_ID_RE.search(prompt).group(1)


def theme_in(prompt: str) -> str:
    """The cluster theme an insight prompt describes."""
    return _THEME_RE.search(prompt).group(1)


class ScriptedChatAgent:
    """
    Stands in for ChatAgent.

    Each completion is answered by the handler registered for the forced tool
    name. A handler is a fixed reply or a callable taking the user prompt; a
    dict/list reply is JSON-encoded, an exception instance is raised.
    """

    def __init__(self, handlers=None):
        self.handlers = dict(handlers or {})
        self.calls = []

    async def complete(self, system_prompt, messages, tools=None, tool_choice=None, temperature=None):
        tool = tool_choice["function"]["name"] if tool_choice else None
        prompt = messages[-1]["content"]
        self.calls.append({"tool": tool, "prompt": prompt, "temperature": temperature})

        handler = self.handlers[tool]
        reply = handler(prompt) if callable(handler) else handler
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)

    def calls_for(self, tool):
        return [c for c in self.calls if c["tool"] == tool]


@pytest.fixture
def scripted_agent():
    return ScriptedChatAgent()


@pytest.fixture
def event_bus():
    return PipelineEventBus("pipeline_test")


@pytest.fixture
def product_areas():
    return [
        ProductArea(id="area_auth", name="Authentication", description="Login and sessions", keywords=["login", "sso"]),
        ProductArea(id="area_dash", name="Dashboard", description="Reporting dashboards", keywords=["charts"]),
    ]


@pytest.fixture
def feedback_items():
    """Two session-timeout complaints and three slow-dashboard complaints."""
    ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    texts = {
        "fb1": "I keep getting logged out every ten minutes. This is broken and urgent!",
        "fb2": "Session timeout is way too aggressive, I lose my work constantly.",
        "fb3": "The dashboard takes forever to load with our data.",
        "fb4": "Dashboard charts are really slow when filtering by month.",
        "fb5": "Loading the main dashboard is painfully slow for our team.",
    }
    return [
        FeedbackItem(
            id=feedback_id,
            text=text,
            user_id=f"user_{n}",
            timestamp=ts,
            source="support" if n % 2 else "survey",
            user_metadata=UserMetadata(plan="pro", segment="enterprise" if n < 3 else "smb", team_size=25),
        )
        for n, (feedback_id, text) in enumerate(texts.items(), start=1)
    ]


@pytest.fixture
def make_enriched():
    """Factory for EnrichedFeedbackItem with sensible defaults."""
    def _make(
        feedback_id,
        text=None,
        label="negative",
        confidence=0.8,
        urgency="medium",
        areas=(("area_auth", "Authentication"),),
        category=("bug",),
        features=(),
        segment=None,
    ):
        return EnrichedFeedbackItem(
            id=feedback_id,
            text=text or f"Feedback text for {feedback_id}. It describes a problem in detail.",
            user_id="user_1",
            timestamp=datetime(2024, 5, 1, tzinfo=timezone.utc),
            source="support",
            user_metadata=UserMetadata(segment=segment) if segment else None,
            linked_product_areas=[{"id": a, "name": n, "confidence": 0.9} for a, n in areas],
            sentiment={"label": label, "score": -0.5 if label == "negative" else 0.5, "confidence": confidence},
            extracted_features=list(features),
            urgency=urgency,
            category=list(category),
        )
    return _make
