"""Boundary contracts for identity-adjacent data the chat domain only reads.

Friendships, blocks and profiles are owned by other services. This module
answers the two questions messaging needs from them: may A message B, and
what does a participant look like in the inbox.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Protocol

from messaging.infra import postgres
from messaging.settings import settings

from .models import ParticipantProfile

logger = logging.getLogger(__name__)


class RelationshipGate(Protocol):
	async def may_message(self, sender_id: str, recipient_id: str) -> bool:
		...


class ProfileDirectory(Protocol):
	async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ParticipantProfile]:
		...


class PostgresRelationshipGate:
	"""Accepted friendship, no block in either direction, recipient active."""

	async def may_message(self, sender_id: str, recipient_id: str) -> bool:
		pool = await postgres.pool_or_none()
		if pool is None:
			# Local development without the social tables.
			return settings.is_dev()
		async with pool.acquire() as conn:
			friendship = await conn.fetchval(
				"""
				SELECT 1 FROM friendships
				WHERE status = 'accepted'
				AND ((requester_id = $1 AND addressee_id = $2) OR (requester_id = $2 AND addressee_id = $1))
				LIMIT 1
				""",
				sender_id,
				recipient_id,
			)
			if not friendship:
				return False
			blocked = await conn.fetchval(
				"""
				SELECT 1 FROM blocks
				WHERE (blocker_id = $1 AND blocked_id = $2) OR (blocker_id = $2 AND blocked_id = $1)
				LIMIT 1
				""",
				sender_id,
				recipient_id,
			)
			if blocked:
				return False
			active = await conn.fetchval(
				"""
				SELECT 1 FROM profiles
				WHERE id = $1 AND status = 'active' AND deactivated_at IS NULL
				""",
				recipient_id,
			)
			return bool(active)


class PostgresProfileDirectory:
	async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ParticipantProfile]:
		ids = sorted({str(user_id) for user_id in user_ids})
		if not ids:
			return {}
		pool = await postgres.pool_or_none()
		if pool is None:
			return {user_id: ParticipantProfile(user_id=user_id) for user_id in ids}
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT id, username, first_name, last_name, profile_photo_url, status, deactivated_at
				FROM profiles
				WHERE id = ANY($1::text[])
				""",
				ids,
			)
		profiles: Dict[str, ParticipantProfile] = {}
		for row in rows:
			user_id = str(row["id"])
			name = " ".join(part for part in (row["first_name"], row["last_name"]) if part) or None
			profiles[user_id] = ParticipantProfile(
				user_id=user_id,
				handle=row["username"],
				display_name=name,
				avatar_url=row["profile_photo_url"],
				active=row["status"] == "active" and row["deactivated_at"] is None,
			)
		missing = [user_id for user_id in ids if user_id not in profiles]
		if missing:
			logger.info("chat_profiles_missing", extra={"count": len(missing)})
			for user_id in missing:
				profiles[user_id] = ParticipantProfile(user_id=user_id, active=False)
		return profiles


class AllowAllGate:
	"""Gate used by tests and local tooling that have no social graph."""

	def __init__(self) -> None:
		self.denied: set[tuple[str, str]] = set()

	def deny(self, sender_id: str, recipient_id: str) -> None:
		self.denied.add((sender_id, recipient_id))
		self.denied.add((recipient_id, sender_id))

	def allow(self, sender_id: str, recipient_id: str) -> None:
		self.denied.discard((sender_id, recipient_id))
		self.denied.discard((recipient_id, sender_id))

	async def may_message(self, sender_id: str, recipient_id: str) -> bool:
		return (sender_id, recipient_id) not in self.denied


class StaticProfileDirectory:
	def __init__(self, profiles: Iterable[ParticipantProfile] = ()) -> None:
		self._profiles = {profile.user_id: profile for profile in profiles}

	def put(self, profile: ParticipantProfile) -> None:
		self._profiles[profile.user_id] = profile

	async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ParticipantProfile]:
		return {
			str(user_id): self._profiles.get(str(user_id), ParticipantProfile(user_id=str(user_id)))
			for user_id in user_ids
		}
