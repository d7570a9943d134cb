"""Logical event ids and their per-account native ids."""

from __future__ import annotations

import logging
import re
import uuid

from pydantic import ValidationError

from calcast.models.event import EventUid
from calcast.models.mapping import EventMapping
from calcast.store.base import KeyValueStore, get_store, make_key, make_prefix

logger = logging.getLogger(__name__)

MAPPING_NAMESPACE = "emap"
UID_PREFIX = "EVT-"

_UID_SEARCH = re.compile(r"EVT-[0-9a-f]{8}(?![0-9a-f])", re.IGNORECASE)
_UID_FULL = re.compile(r"^EVT-[0-9a-f]{8}$", re.IGNORECASE)


def extract_event_uid(text: str) -> str | None:
    """Pull an ``EVT-xxxxxxxx`` reference out of free text, normalised."""
    match = _UID_SEARCH.search(text or "")
    return normalize_event_uid(match.group(0)) if match else None


def is_valid_event_uid(uid: str) -> bool:
    return bool(_UID_FULL.match(uid or ""))


def normalize_event_uid(uid: str) -> str:
    return UID_PREFIX + uid[len(UID_PREFIX) :].lower()


class EventIdentityRegistry:
    """Tracks which native event backs a logical event in each account.

    Mappings live at ``emap:{workspace}:{uid}:{account}`` so that listing one
    uid is a single prefix scan.
    """

    def __init__(self, store: KeyValueStore | None = None) -> None:
        self.store = store or get_store()

    @staticmethod
    def allocate() -> EventUid:
        """Mint a new logical id from 122 bits of uuid4 randomness.

        The short form keeps the first 32 bits, which is plenty for the number
        of live events one chat has.
        """
        canonical = uuid.uuid4().hex
        return EventUid(short=f"{UID_PREFIX}{canonical[:8]}", canonical=canonical)

    @staticmethod
    def _key(workspace_id: str, uid: str, external_account_id: str) -> str:
        return make_key(MAPPING_NAMESPACE, workspace_id, uid, external_account_id)

    async def _load(self, key: str) -> EventMapping | None:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return EventMapping.model_validate_json(raw)
        except ValidationError:
            logger.error("Discarding malformed mapping record %s", key)
            return None

    async def record_mapping(
        self, workspace_id: str, uid: str, external_account_id: str, native_event_id: str
    ) -> EventMapping:
        key = self._key(workspace_id, uid, external_account_id)
        existing = await self._load(key)
        mapping = EventMapping(
            workspace_id=workspace_id,
            bot_event_uid=uid,
            external_account_id=external_account_id,
            native_event_id=native_event_id,
        )
        if existing is not None:
            mapping.created_at = existing.created_at
            mapping.touch()
        await self.store.put(key, mapping.model_dump_json())
        logger.info(
            "Stored event mapping: %s -> %s (%s)", uid, native_event_id, external_account_id
        )
        return mapping

    async def mappings_for(self, workspace_id: str, uid: str) -> list[EventMapping]:
        """All mappings for a uid. Empty means the event no longer exists anywhere."""
        mappings = []
        for key in await self.store.list_keys(make_prefix(MAPPING_NAMESPACE, workspace_id, uid)):
            mapping = await self._load(key)
            if mapping is not None:
                mappings.append(mapping)
        return mappings

    async def remove_mapping(
        self, workspace_id: str, uid: str, external_account_id: str | None = None
    ) -> None:
        if external_account_id is not None:
            await self.store.delete(self._key(workspace_id, uid, external_account_id))
            logger.info("Deleted event mapping: %s (%s)", uid, external_account_id)
            return
        for key in await self.store.list_keys(make_prefix(MAPPING_NAMESPACE, workspace_id, uid)):
            await self.store.delete(key)
        logger.info("Deleted all event mappings for: %s", uid)

    async def cascade_remove_for_account(self, workspace_id: str, external_account_id: str) -> int:
        """Drop every mapping in the workspace that points at one account.

        Scan-and-filter over the workspace prefix; mapping counts per
        workspace are small (live events × linked accounts).
        """
        deleted = 0
        for key in await self.store.list_keys(make_prefix(MAPPING_NAMESPACE, workspace_id)):
            mapping = await self._load(key)
            if mapping is not None and mapping.external_account_id == external_account_id:
                await self.store.delete(key)
                deleted += 1
        logger.info(
            "Deleted %d event mappings for account %s in workspace %s",
            deleted,
            external_account_id,
            workspace_id,
        )
        return deleted
