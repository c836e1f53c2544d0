"""Access tokens accepted by the messaging API.

Tokens are minted by the identity service; this side only checks them
(HS256 with `settings.secret_key`, issuer and audience pinned) and reduces
them to the claims chat needs. `encode_access` exists for tooling and tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import jwt
from jwt import InvalidTokenError

from messaging.settings import settings

ALGORITHM = "HS256"


@dataclass(slots=True, frozen=True)
class AccessClaims:
	user_id: str
	handle: Optional[str]
	expires_at: int

	@classmethod
	def from_payload(cls, payload: Mapping[str, Any]) -> "AccessClaims":
		user_id = str(payload.get("sub") or "").strip()
		if not user_id:
			raise InvalidTokenError("missing_claim:sub")
		handle = str(payload.get("handle") or "").strip()
		return cls(
			user_id=user_id,
			handle=handle or None,
			expires_at=int(payload["exp"]),
		)


def encode_access(user_id: str, *, handle: Optional[str] = None, ttl_seconds: Optional[int] = None) -> str:
	now = int(time.time())
	ttl = settings.jwt_access_ttl_seconds if ttl_seconds is None else ttl_seconds
	body: Dict[str, Any] = {
		"iss": settings.jwt_issuer,
		"aud": settings.jwt_audience,
		"sub": str(user_id),
		"iat": now,
		"exp": now + ttl,
	}
	if handle:
		body["handle"] = handle
	return jwt.encode(body, settings.secret_key, algorithm=ALGORITHM)


def decode_access(token: str) -> AccessClaims:
	"""Validate a token and return its claims; raises `InvalidTokenError` subclasses."""
	payload = jwt.decode(
		token,
		settings.secret_key,
		algorithms=[ALGORITHM],
		audience=settings.jwt_audience,
		issuer=settings.jwt_issuer,
		leeway=settings.jwt_leeway_seconds,
		options={"require": ["exp", "iat", "iss", "aud", "sub"]},
	)
	return AccessClaims.from_payload(payload)
