import json
import logging
import random
from datetime import datetime, timezone

import requests

from ..config import OPENROUTER_API_KEY, OPENROUTER_URL, AI_MODEL, AI_MODELS
from ..errors import GenerationFailed
from ..models import Label

logger = logging.getLogger(__name__)

LABEL_CHOICES = ", ".join(f'"{label.value}"' for label in Label)

MISSION_SYSTEM_PROMPT = f"""You are an assistant for people with ADHD that proposes adaptive micro-missions.
Your role is to propose short, engaging missions that help the user keep focus,
take breaks and build healthy habits.

Generate ONE new mission from the context and the recent mission history.

Active time window: {{active_time_start}} - {{active_time_end}}
Daily time budget: {{daily_budget}} minutes

Missions must be:
- Short (2-30 minutes)
- Clear and concrete
- Easy to start and motivating
- Varied (do not repeat the same label too often)

Return ONLY valid JSON, no markdown:
{{{{
  "label": one of {LABEL_CHOICES},
  "title": short clear title,
  "description": optional longer description,
  "duration_minutes": integer minutes,
  "scheduled_at": suggested ISO datetime,
  "source": "auto"
}}}}"""

FEEDBACK_SYSTEM_PROMPT = f"""You analyse the preferences and behaviour of people with ADHD.
Read the user's feedback on a mission they just completed and draw lessons from it.

Return ONLY valid JSON:
{{
  "insights": a short paragraph on what this feedback tells us,
  "nextLabelSuggestion": one of {LABEL_CHOICES},
  "nextDurationSuggestion": integer minutes for the next mission
}}"""


def extract_json(response_text: str) -> dict:
    """
    Pull a JSON object out of a model reply.

    Accepts bare JSON, a ```json fenced block, or the outermost {...} span.

    Raises:
        GenerationFailed if no JSON object can be parsed
    """
    if not response_text:
        raise GenerationFailed("Empty response from generator")
    try:
        data = json.loads(response_text)
    except ValueError:
        if "```json" in response_text:
            json_str = response_text.split("```json")[1].split("```")[0].strip()
        elif "```" in response_text:
            json_str = response_text.split("```")[1].strip()
        else:
            start = response_text.find("{")
            end = response_text.rfind("}") + 1
            if start < 0 or end <= start:
                raise GenerationFailed("Could not parse generator response")
            json_str = response_text[start:end]
        try:
            data = json.loads(json_str)
        except ValueError as e:
            raise GenerationFailed(f"Could not parse generator response: {e}") from e
    if not isinstance(data, dict):
        raise GenerationFailed("Generator response is not a JSON object")
    return data


class OpenRouterGenerator:
    """Content generator backed by an OpenRouter chat-completions model."""

    def __init__(self, api_key: str = None, model: str = AI_MODEL, url: str = OPENROUTER_URL,
                 timeout: float = 15, temperature: float = 0.7, max_tokens: int = 500):
        self.api_key = api_key or OPENROUTER_API_KEY
        self.model = model
        self.url = url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def model_id(self) -> str:
        return AI_MODELS.get(self.model, self.model)

    def _chat(self, system: str, user_content: str) -> dict:
        if not self.api_key:
            raise GenerationFailed("API key not set")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "X-Title": "Focus Companion",
        }
        payload = {
            "model": self.model_id,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user_content},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            resp = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise GenerationFailed(f"Generator timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise GenerationFailed(f"Generator request failed: {e}") from e

        if resp.status_code != 200:
            raise GenerationFailed(f"API request failed: {resp.status_code}")
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationFailed(f"Unexpected generator payload: {e}") from e
        return extract_json(content)

    def generate_next_mission(self, recent_missions: list, label_stats: list, preferences: dict) -> dict:
        system = MISSION_SYSTEM_PROMPT.format(
            active_time_start=preferences.get("activeTimeStart"),
            active_time_end=preferences.get("activeTimeEnd"),
            daily_budget=preferences.get("dailyBudgetMinutes"),
        )
        user_content = json.dumps({
            "recentMissions": recent_missions[-5:],
            "labelStats": label_stats,
            "currentTime": datetime.now(timezone.utc).isoformat(),
        }, default=str)
        return self._chat(system, user_content)

    def analyze_feedback(self, mission, feedback) -> dict:
        """
        Ask the model what a piece of feedback says about the next mission.

        Returns:
            {"insights": str, "nextLabelSuggestion": str, "nextDurationSuggestion": int}
        """
        mission_data = {
            "label": mission.label,
            "title": mission.title,
            "description": mission.description,
            "duration_minutes": mission.duration_minutes,
            "status": mission.status,
            "feedback": {"rating": feedback.rating, "comment": feedback.comment},
        }
        return self._chat(FEEDBACK_SYSTEM_PROMPT, json.dumps(mission_data))


# Canned missions for the offline generator
FALLBACK_MISSIONS = {
    "focus": ("Focused work session", "Work on one important task for 25 minutes with no distractions."),
    "pause_mentale": ("Breathing break", "Take 5 minutes to breathe deeply and recentre."),
    "mouvement": ("Mini workout", "Do a few movements to wake your body up."),
    "lecture": ("Quick read", "Read a few pages of a book or an interesting article."),
    "créativité": ("Creative moment", "Take a moment to draw, write or make something."),
}
DEFAULT_FALLBACK = ("New mission", "A mission suited to your day.")


class HeuristicGenerator:
    """
    Offline generator used when no API key is configured.

    Picks the least-used label, favours focus until it has 3 missions, and
    follows a focus mission with a break.
    """

    def __init__(self, rng: random.Random = None, clock=None):
        self.rng = rng or random.Random()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def generate_next_mission(self, recent_missions: list, label_stats: list, preferences: dict) -> dict:
        next_label = Label.FOCUS.value

        if label_stats:
            least_used = min(label_stats, key=lambda s: s.get("totalCount", 0))
            next_label = least_used["label"]

            focus = next((s for s in label_stats if s["label"] == Label.FOCUS.value), None)
            if focus and focus.get("totalCount", 0) < 3:
                next_label = Label.FOCUS.value

            if recent_missions and recent_missions[-1].get("label") == Label.FOCUS.value:
                next_label = self.rng.choice([Label.PAUSE_MENTALE.value, Label.MOUVEMENT.value])

        if next_label == Label.FOCUS.value:
            duration = 25
        elif next_label in (Label.MOUVEMENT.value, Label.PAUSE_MENTALE.value):
            duration = 5
        else:
            duration = 15

        title, description = FALLBACK_MISSIONS.get(next_label, DEFAULT_FALLBACK)
        return {
            "label": next_label,
            "title": title,
            "description": description,
            "duration_minutes": duration,
            "scheduled_at": self.clock().isoformat(),
            "source": "auto",
        }


def default_generator(model: str = AI_MODEL):
    if OPENROUTER_API_KEY:
        return OpenRouterGenerator(model=model)
    logger.warning("OPENROUTER_API_KEY missing, using the offline mission generator")
    return HeuristicGenerator()
