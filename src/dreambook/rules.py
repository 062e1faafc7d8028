"""Loading and periodic refresh of the process-wide global prompt rules."""

import asyncio
import json
import logging
import os
from typing import Any, Callable, Dict

from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from dreambook.db_models import GLOBAL_PROMPT_RULES_COLLECTION
from dreambook.models import GlobalRules


logger = logging.getLogger(__name__)

DEFAULT_RULE_ENV = "DEFAULT_PROMPT_RULE"

HARDCODED_RULES: Dict[str, str] = {
    "ratio": "1:1",
    "subject": "a single main character, clearly framed",
    "quality": "high quality, detailed, professional",
    "style": "warm and gentle atmosphere",
    "technical": "soft lighting, cinematic composition",
}


def _rules_from_document(document: Dict[str, Any]) -> Dict[str, Any] | None:
    # The admin tooling stores the rule set under ``json_rules``; older documents
    # carry the keys at the top level.
    rules = document.get("json_rules") or document.get("jsonRules")
    if isinstance(rules, str):
        try:
            rules = json.loads(rules)
        except json.JSONDecodeError:
            logger.warning("Active rule document %s has malformed json_rules", document.get("_id"))
            return None
    if isinstance(rules, dict):
        return rules
    top_level = {key: value for key, value in document.items() if key in GlobalRules.KNOWN_KEYS}
    return top_level or None


def load_active_rules(
    collection: Collection | None = None,
    environ: Dict[str, str] | None = None,
) -> GlobalRules:
    """Resolve the active rule set.

    Priority: the active document in the rules collection, then JSON in the
    ``DEFAULT_PROMPT_RULE`` environment variable, then the hardcoded set.
    """
    env = os.environ if environ is None else environ

    if collection is not None:
        try:
            document = collection.find_one({"is_active": True}, sort=[("updated_at", -1)])
        except PyMongoError as e:
            logger.warning("Could not load active prompt rules from database: %s", e)
            document = None
        if document:
            rules = _rules_from_document(document)
            if rules:
                name = document.get("name") or str(document.get("_id"))
                logger.info("Using active global prompt rules: %s", name)
                return GlobalRules.from_mapping(rules, source=f"database:{name}")

    raw = env.get(DEFAULT_RULE_ENV)
    if raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Could not parse %s: %s", DEFAULT_RULE_ENV, e)
        else:
            if isinstance(parsed, dict):
                logger.info("Using global prompt rules from %s", DEFAULT_RULE_ENV)
                return GlobalRules.from_mapping(parsed, source="environment")
            logger.warning("%s must be a JSON object; ignoring it", DEFAULT_RULE_ENV)

    logger.info("No active global prompt rules configured; using built-in defaults")
    return GlobalRules.from_mapping(HARDCODED_RULES, source="default")


class GlobalRulesProvider:
    """Holds the current rule snapshot and refreshes it in the background.

    Readers call ``current()`` and receive an immutable snapshot; a refresh
    replaces the snapshot atomically and never mutates one already handed out.
    """

    def __init__(
        self,
        collection: Collection | None = None,
        refresh_interval: float = 60.0,
        loader: Callable[[], GlobalRules] | None = None,
    ):
        self.collection = collection
        self.refresh_interval = refresh_interval
        self._loader = loader or (lambda: load_active_rules(self.collection))
        self._snapshot: GlobalRules = self._loader()
        self._task: asyncio.Task | None = None

    @classmethod
    def from_database(cls, refresh_interval: float = 60.0) -> "GlobalRulesProvider":
        from dreambook.db_config import get_mongo_collection

        return cls(get_mongo_collection(GLOBAL_PROMPT_RULES_COLLECTION), refresh_interval)

    def current(self) -> GlobalRules:
        return self._snapshot

    def refresh(self) -> GlobalRules:
        """Reload the rule set now; on failure the previous snapshot is kept."""
        try:
            snapshot = self._loader()
        except Exception as e:
            logger.warning("Global rule refresh failed, keeping previous rules: %s", e)
            return self._snapshot
        if snapshot != self._snapshot:
            logger.info("Global prompt rules changed (source: %s)", snapshot.source)
        self._snapshot = snapshot
        return snapshot

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            await asyncio.get_running_loop().run_in_executor(None, self.refresh)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin periodic refresh on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
