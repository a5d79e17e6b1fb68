import json
import random
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import requests

from companion.errors import GenerationFailed
from companion.services import generator as generator_module
from companion.services.generator import HeuristicGenerator, OpenRouterGenerator, extract_json

DRAFT = {
    "label": "lecture",
    "title": "Read one chapter",
    "duration_minutes": 15,
    "source": "auto",
}
PREFS = {"activeTimeStart": "09:00", "activeTimeEnd": "18:00", "dailyBudgetMinutes": 120}


def _stats(**counts):
    labels = ["lecture", "mouvement", "focus", "pause_mentale", "créativité", "routine", "social", "admin"]
    return [{"label": l, "totalCount": counts.get(l, 5)} for l in labels]


class FakeResponse:
    def __init__(self, status_code=200, content=None, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {"choices": [{"message": {"content": content}}]}

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


def test_extract_plain_json():
    assert extract_json(json.dumps(DRAFT)) == DRAFT


def test_extract_fenced_json():
    text = "Here you go:\n```json\n" + json.dumps(DRAFT) + "\n```\nEnjoy!"
    assert extract_json(text) == DRAFT


def test_extract_embedded_object():
    text = "Sure! " + json.dumps(DRAFT) + " Have fun."
    assert extract_json(text) == DRAFT


@pytest.mark.parametrize("text", ["", "no json here", "{broken", "[1, 2, 3]"])
def test_extract_failures(text):
    with pytest.raises(GenerationFailed):
        extract_json(text)


def test_openrouter_posts_context_and_parses_reply(monkeypatch):
    captured = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured.update(url=url, payload=json, headers=headers, timeout=timeout)
        return FakeResponse(content="```json\n" + generator_module.json.dumps(DRAFT) + "\n```")

    monkeypatch.setattr(generator_module.requests, "post", fake_post)
    gen = OpenRouterGenerator(api_key="k-test", model="low", timeout=3)
    recent = [{"label": "focus", "title": f"t{i}"} for i in range(8)]

    assert gen.generate_next_mission(recent, _stats(), PREFS) == DRAFT
    assert captured["headers"]["Authorization"] == "Bearer k-test"
    assert captured["timeout"] == 3
    assert captured["payload"]["model"] == "google/gemini-flash-1.5"
    system, user = captured["payload"]["messages"]
    assert "09:00 - 18:00" in system["content"]
    assert len(json.loads(user["content"])["recentMissions"]) == 5


def test_openrouter_http_error(monkeypatch):
    monkeypatch.setattr(generator_module.requests, "post", lambda *a, **kw: FakeResponse(status_code=502))
    with pytest.raises(GenerationFailed):
        OpenRouterGenerator(api_key="k").generate_next_mission([], _stats(), PREFS)


def test_openrouter_timeout(monkeypatch):
    def slow(*a, **kw):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(generator_module.requests, "post", slow)
    with pytest.raises(GenerationFailed):
        OpenRouterGenerator(api_key="k").generate_next_mission([], _stats(), PREFS)


def test_openrouter_unexpected_body(monkeypatch):
    monkeypatch.setattr(generator_module.requests, "post", lambda *a, **kw: FakeResponse(body={"oops": True}))
    with pytest.raises(GenerationFailed):
        OpenRouterGenerator(api_key="k").generate_next_mission([], _stats(), PREFS)


def test_openrouter_without_key_fails_fast(monkeypatch):
    def boom(*a, **kw):
        pytest.fail("no request should be sent without a key")

    monkeypatch.setattr(generator_module.requests, "post", boom)
    monkeypatch.setattr(generator_module, "OPENROUTER_API_KEY", None)
    with pytest.raises(GenerationFailed):
        OpenRouterGenerator(api_key=None).generate_next_mission([], _stats(), PREFS)


def test_analyze_feedback(monkeypatch):
    reply = {"insights": "Likes short reads", "nextLabelSuggestion": "lecture", "nextDurationSuggestion": 10}
    monkeypatch.setattr(generator_module.requests, "post",
                        lambda *a, **kw: FakeResponse(content=json.dumps(reply)))
    mission = SimpleNamespace(label="lecture", title="Read", description=None, duration_minutes=15, status="completed")
    feedback = SimpleNamespace(rating=5, comment="more please")
    assert OpenRouterGenerator(api_key="k").analyze_feedback(mission, feedback) == reply


def test_heuristic_prefers_focus_until_three():
    gen = HeuristicGenerator(random.Random(1))
    draft = gen.generate_next_mission([], _stats(focus=2, admin=0), PREFS)
    assert draft["label"] == "focus"
    assert draft["duration_minutes"] == 25
    assert draft["source"] == "auto"


def test_heuristic_picks_least_used_label():
    draft = HeuristicGenerator(random.Random(1)).generate_next_mission([], _stats(lecture=1), PREFS)
    assert draft["label"] == "lecture"
    assert draft["duration_minutes"] == 15
    assert draft["title"] == "Quick read"


def test_heuristic_breaks_after_focus():
    recent = [{"label": "admin"}, {"label": "focus"}]
    draft = HeuristicGenerator(random.Random(1)).generate_next_mission(recent, _stats(), PREFS)
    assert draft["label"] in ("pause_mentale", "mouvement")
    assert draft["duration_minutes"] == 5


def test_heuristic_default_title_and_schedule():
    now = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
    gen = HeuristicGenerator(random.Random(1), clock=lambda: now)
    draft = gen.generate_next_mission([], _stats(admin=0), PREFS)
    assert draft["label"] == "admin"
    assert draft["title"] == "New mission"
    assert draft["scheduled_at"] == now.isoformat()


def test_default_generator_falls_back_without_key(monkeypatch):
    monkeypatch.setattr(generator_module, "OPENROUTER_API_KEY", None)
    assert isinstance(generator_module.default_generator(), HeuristicGenerator)
    monkeypatch.setattr(generator_module, "OPENROUTER_API_KEY", "k")
    assert isinstance(generator_module.default_generator(), OpenRouterGenerator)
