"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM - reads and writes go through plain helper
methods that load and dump JSON. Writes go to a temp file first and are
moved into place with ``os.replace`` so a crash never leaves half a file.

Directory layout:

    {base}/
      config.json               ← global settings (merged over _CONFIG_DEFAULTS)
      knowledge.json            ← list of reference documents
      campaigns/
        {id}.json               ← campaign metadata + authoritative game state
        {id}/
          messages.json         ← append-only transcript
      users/
        {uid}.json              ← tier, turn balance, usage counters
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chronicle.errors import PersistenceFailure

logger = logging.getLogger(__name__)

_CONFIG_DEFAULTS: dict[str, Any] = {
    "models": {
        "brain": "gpt-4o-mini",
        "voice": "claude-3-5-sonnet",
        "reviewer": "gpt-4o-mini",
    },
    "model_costs": {},
    "default_turn_cost": 10,
    "reviewer": {"enabled": True, "frequency": 1},
    "voice": {"min_words": 150, "max_words": 250},
    "knowledge": {"brain_limit": 2, "voice_limit": 3, "cache_ttl_seconds": 600},
    "prompts": {},
    "world_rules": {},
}

# Groups merged key-by-key; everything else is replaced wholesale
_MERGED_GROUPS = ("models", "model_costs", "reviewer", "voice", "knowledge", "prompts", "world_rules")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonStore:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._campaign_root = self._base / "campaigns"
        self._user_root = self._base / "users"
        self._campaign_root.mkdir(parents=True, exist_ok=True)
        self._user_root.mkdir(parents=True, exist_ok=True)
        self._user_locks: dict[str, asyncio.Lock] = {}

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _config_file(self) -> Path:
        return self._base / "config.json"

    def _knowledge_file(self) -> Path:
        return self._base / "knowledge.json"

    def _campaign_file(self, campaign_id: str) -> Path:
        return self._campaign_root / f"{campaign_id}.json"

    def _messages_file(self, campaign_id: str) -> Path:
        return self._campaign_root / campaign_id / "messages.json"

    def _user_file(self, user_id: str) -> Path:
        return self._user_root / f"{user_id}.json"

    def _read_json(self, path: Path, default: Any = None) -> Any:
        if not path.is_file():
            return default
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def get_config(self) -> dict[str, Any]:
        """Read config, returning defaults merged with stored values."""
        config = copy.deepcopy(_CONFIG_DEFAULTS)
        stored = self._read_json(self._config_file(), {})
        for key, value in stored.items():
            if key in _MERGED_GROUPS and isinstance(value, dict):
                config[key].update(value)
            else:
                config[key] = value
        return config

    def update_config(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge fields into config and persist. Returns full config."""
        config = self.get_config()
        for key, value in fields.items():
            if key in _MERGED_GROUPS and isinstance(value, dict):
                config[key].update(value)
            else:
                config[key] = value
        self._write_json(self._config_file(), config)
        return config

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def create_campaign(
        self,
        *,
        world: str,
        owner: str | None = None,
        title: str = "",
        state: dict[str, Any] | None = None,
        campaign_id: str | None = None,
    ) -> dict[str, Any]:
        campaign_id = campaign_id or uuid.uuid4().hex[:12]
        campaign = {
            "id": campaign_id,
            "title": title or "Untitled Campaign",
            "world": world,
            "owner": owner,
            "state": state or {},
            "turnNumber": 0,
            "createdAt": utc_now(),
            "updatedAt": utc_now(),
        }
        self._write_json(self._campaign_file(campaign_id), campaign)
        self._write_json(self._messages_file(campaign_id), [])
        return campaign

    def get_campaign(self, campaign_id: str) -> dict[str, Any] | None:
        return self._read_json(self._campaign_file(campaign_id))

    def update_campaign_state(self, campaign_id: str, state: dict[str, Any]) -> dict[str, Any]:
        """Replace the stored state outside a turn (quest accept/decline)."""
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            raise KeyError(campaign_id)
        campaign["state"] = state
        campaign["updatedAt"] = utc_now()
        self._write_json(self._campaign_file(campaign_id), campaign)
        return campaign

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_messages(self, campaign_id: str) -> list[dict[str, Any]]:
        return self._read_json(self._messages_file(campaign_id), [])

    def append_messages(self, campaign_id: str, messages: list[dict[str, Any]]) -> None:
        existing = self.get_messages(campaign_id)
        self._write_json(self._messages_file(campaign_id), existing + messages)

    # ------------------------------------------------------------------
    # Turn persistence
    # ------------------------------------------------------------------

    def save_turn(
        self,
        campaign_id: str,
        state: dict[str, Any],
        messages: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Persist the post-turn state and transcript entries together.

        Both files are staged before either is moved into place. The
        transcript goes first and the campaign, which carries the turn
        number, last; if the campaign move fails the previous transcript
        is written back. Raises PersistenceFailure when anything goes
        wrong; nothing is charged then.
        """
        try:
            campaign = self.get_campaign(campaign_id)
            if campaign is None:
                raise PersistenceFailure(f"Campaign {campaign_id} does not exist")
            previous = self.get_messages(campaign_id)
            campaign["state"] = state
            campaign["turnNumber"] = campaign.get("turnNumber", 0) + 1
            campaign["updatedAt"] = utc_now()

            campaign_path = self._campaign_file(campaign_id)
            messages_path = self._messages_file(campaign_id)
            campaign_tmp = self._stage(campaign_path, campaign)
            messages_tmp = self._stage(messages_path, previous + messages)

            os.replace(messages_tmp, messages_path)
            try:
                os.replace(campaign_tmp, campaign_path)
            except OSError:
                messages_path.write_text(json.dumps(previous, indent=2))
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error("save_turn failed for campaign %s: %s", campaign_id, e)
            raise PersistenceFailure() from e
        return campaign

    @staticmethod
    def _stage(path: Path, data: Any) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        return tmp

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user_id: str, *, tier: str = "scout", turns: int = 0) -> dict[str, Any]:
        user = {
            "id": user_id,
            "tier": tier,
            "turns": turns,
            "turnsUsed": 0,
            "tokenUsage": {},
        }
        self._write_json(self._user_file(user_id), user)
        return user

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        return self._read_json(self._user_file(user_id))

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def user_transaction(self, user_id: str) -> AsyncIterator[dict[str, Any]]:
        """Serialised read-modify-write of one user record.

        The record is written back only if the block exits without raising.
        """
        async with self._lock_for(user_id):
            user = self.get_user(user_id)
            if user is None:
                raise KeyError(user_id)
            yield user
            self._write_json(self._user_file(user_id), user)

    # ------------------------------------------------------------------
    # Knowledge
    # ------------------------------------------------------------------

    def list_knowledge(self) -> list[dict[str, Any]]:
        return self._read_json(self._knowledge_file(), [])

    def add_knowledge(
        self,
        *,
        title: str,
        content: str,
        world: str = "global",
        target_model: str = "both",
        enabled: bool = True,
    ) -> dict[str, Any]:
        doc = {
            "id": uuid.uuid4().hex[:12],
            "title": title,
            "content": content,
            "world": world,
            "targetModel": target_model,
            "enabled": enabled,
        }
        docs = self.list_knowledge()
        docs.append(doc)
        self._write_json(self._knowledge_file(), docs)
        return doc
