import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from ..config import GENERATION_TIMEOUT_SECONDS
from ..db import session_scope
from ..errors import GenerationFailed, ValidationError
from ..models import Mission, MissionStatus
from .missions import MissionRepository, REQUIRED_DRAFT_FIELDS, validate_draft
from .policy import EconomyPolicy
from .stats import label_stats, recent_with_feedback

logger = logging.getLogger(__name__)

RECENT_MISSIONS = 5
GENERATOR_WORKERS = 2


def _coerce_duration(value):
    # Models sometimes answer "15" or 15.0
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class GenerationCoordinator:
    """
    Asks the content generator for a draft, checks it, prices it and stores it.

    The generator runs on a worker thread and is given ``timeout`` seconds.
    Nothing is written before it has answered with a usable draft, so a
    failure or timeout leaves no mission and no ledger entry behind.

    A timed-out call cannot be interrupted, so its worker is abandoned. Once
    every worker of the pool is stuck that way, the pool is replaced so later
    requests are not queued behind hung calls.
    """

    def __init__(self, repository: MissionRepository, generator, policy: EconomyPolicy = None,
                 timeout: float = GENERATION_TIMEOUT_SECONDS, recent_limit: int = RECENT_MISSIONS,
                 max_workers: int = GENERATOR_WORKERS):
        self.repository = repository
        self.generator = generator
        self.policy = policy or EconomyPolicy()
        self.timeout = timeout
        self.recent_limit = recent_limit
        self.max_workers = max_workers
        self._executor = self._new_executor()
        self._stuck = set()
        self._guard = threading.Lock()

    def _new_executor(self):
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="mission-generator")

    def _abandon(self, future):
        with self._guard:
            self._stuck.add(future)
            future.add_done_callback(self._stuck.discard)
            logger.warning("Abandoned a hung generator worker (%d of %d stuck)", len(self._stuck), self.max_workers)
            if len(self._stuck) >= self.max_workers:
                logger.warning("All generator workers are stuck, starting a fresh pool")
                self._executor.shutdown(wait=False)
                self._executor = self._new_executor()
                self._stuck = set()

    def build_context(self) -> tuple:
        with session_scope(self.repository.session_factory) as db:
            return recent_with_feedback(db, self.recent_limit), label_stats(db)

    def request_draft(self, recent: list, stats: list, preferences: dict) -> dict:
        future = self._executor.submit(self.generator.generate_next_mission, recent, stats, preferences)
        try:
            payload = future.result(timeout=self.timeout)
        except FutureTimeout:
            if not future.cancel():
                self._abandon(future)
            logger.warning("Mission generator timed out after %ss", self.timeout)
            raise GenerationFailed(f"Generator timed out after {self.timeout}s")
        except GenerationFailed as e:
            logger.warning("Mission generator failed: %s", e)
            raise
        except Exception as e:
            logger.warning("Mission generator raised %s: %s", type(e).__name__, e)
            raise GenerationFailed(f"Generator error: {e}") from e
        return self.check_draft(payload)

    def check_draft(self, payload) -> dict:
        if not isinstance(payload, dict) or not payload:
            raise GenerationFailed("Generator returned no mission")
        missing = [f for f in REQUIRED_DRAFT_FIELDS if payload.get(f) in (None, "")]
        if missing:
            raise GenerationFailed(f"Generated mission is missing {', '.join(missing)}")

        draft = {
            "label": payload["label"],
            "title": payload["title"],
            "description": payload.get("description"),
            "duration_minutes": _coerce_duration(payload["duration_minutes"]),
            "scheduled_at": payload.get("scheduled_at"),
            "source": payload["source"],
        }
        try:
            validate_draft(draft)
        except ValidationError as e:
            raise GenerationFailed(f"Generated mission is malformed: {e}") from e
        return draft

    def enrich(self, draft: dict) -> dict:
        """Add the economy fields: essential flag, reward, and a penalty for essential missions."""
        enriched = dict(draft)
        enriched["essential"] = self.policy.is_essential()
        enriched["reward_amount"] = self.policy.reward_amount()
        enriched["penalty_amount"] = self.policy.penalty_amount() if enriched["essential"] else None
        enriched["visible"] = False
        return enriched

    def generate(self, preferences: dict) -> Mission:
        recent, stats = self.build_context()
        draft = self.request_draft(recent, stats, preferences)
        mission = self.repository.create(self.enrich(draft), status=MissionStatus.PENDING)
        logger.info("Generated mission %s (%s, essential=%s, reward=%s)",
                    mission.id, mission.label, mission.essential, mission.reward_amount)
        return mission

    def shutdown(self):
        self._executor.shutdown(wait=False)
