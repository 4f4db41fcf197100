"""Queries against the Runner's supervisor HTTP API."""

from __future__ import annotations

import logging
from typing import Mapping

import httpx

logger = logging.getLogger(__name__)

COLLISION_ENDPOINT = "/robot/is_collided"


async def query_collision(base_url: str, *, timeout_s: float = 5.0) -> bool:
    """Return the supervisor's collision flag; an unreachable supervisor counts as no collision."""
    url = f"{base_url.rstrip('/')}{COLLISION_ENDPOINT}"
    timeout = httpx.Timeout(timeout_s, connect=min(timeout_s, 2.0))
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            payload = resp.json()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Collision status unavailable from %s: %s", url, exc)
        return False
    return _collided(payload)


def _collided(payload: object) -> bool:
    if isinstance(payload, bool):
        return payload
    if isinstance(payload, Mapping):
        return bool(payload.get("is_collided", False))
    return False


class SupervisorCollisionCheck:
    """Callable bound to one supervisor URL, used by the batch policy."""

    def __init__(self, base_url: str, *, timeout_s: float = 5.0) -> None:
        self.base_url = base_url
        self.timeout_s = timeout_s

    async def __call__(self) -> bool:
        return await query_collision(self.base_url, timeout_s=self.timeout_s)


__all__ = ["COLLISION_ENDPOINT", "SupervisorCollisionCheck", "query_collision"]
