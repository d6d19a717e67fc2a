"""HTTP collaborator that hands out tokens and rooms before a run."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List

import aiohttp

from .config import HarnessConfig, UserConfig
from .errors import FixtureError
from .protocol import RoomId

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _extract(payload: Any, key: str) -> Any:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict) and data.get(key) is not None:
        return data[key]
    return payload.get(key)


class FixtureClient:
    def __init__(self, api_base: str, session: aiohttp.ClientSession) -> None:
        self.api_base = api_base
        self._session = session

    async def _post_json(
        self, path: str, payload: Dict[str, Any], headers: Dict[str, str] | None = None
    ) -> tuple[int, Any]:
        url = _build_url(self.api_base, path)
        try:
            async with self._session.post(url, json=payload, headers=headers) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                return resp.status, body
        except aiohttp.ClientError as exc:
            raise FixtureError(f"POST {url} failed: {exc}") from exc

    async def obtain_token(self, user: UserConfig) -> str:
        """Register ``user`` or, when that fails, log in; return the session token."""

        if not user.email or not user.password:
            raise FixtureError(f"user {user.name} needs a token or email and password")
        status, body = await self._post_json(
            "/auth/register",
            {"user_fullname": user.name, "user_email": user.email, "user_password": user.password},
        )
        token = _extract(body, "token") if status < 400 else None
        if token is None:
            logger.debug("register for %s returned %s, trying login", user.name, status)
            status, body = await self._post_json(
                "/auth/login", {"user_email": user.email, "user_password": user.password}
            )
            if status >= 400:
                raise FixtureError(f"login failed for {user.name}", status=status)
            token = _extract(body, "token")
        if not isinstance(token, str) or not token:
            raise FixtureError(f"no token in auth response for {user.name}")
        return token

    async def create_room(self, token: str, name: str, description: str = "") -> RoomId:
        status, body = await self._post_json(
            "/rooms",
            {"room_name": name, "room_description": description},
            headers={"Authorization": f"Bearer {token}"},
        )
        if status >= 400:
            raise FixtureError(f"room creation failed for {name!r}", status=status)
        room_id = _extract(body, "room_id")
        if room_id is None or isinstance(room_id, bool) or not isinstance(room_id, (int, str)):
            raise FixtureError(f"no room_id in response for {name!r}")
        return room_id


async def prepare_config(
    config: HarnessConfig,
    session: aiohttp.ClientSession,
    *,
    room_count: int = 2,
) -> HarnessConfig:
    """Fill in missing user tokens and rooms through the fixture service."""

    if config.api_base is None:
        return config
    client = FixtureClient(config.api_base, session)

    users: List[UserConfig] = []
    for user in config.users:
        if user.token:
            users.append(user)
            continue
        token = await client.obtain_token(user)
        logger.info("obtained token for %s", user.name)
        users.append(replace(user, token=token))

    rooms = list(config.rooms)
    if not rooms and users:
        owner = users[0].token
        for index in range(1, room_count + 1):
            room_id = await client.create_room(owner, f"harness-room-{index}", "chat harness fixture")
            logger.info("created room %s", room_id)
            rooms.append(room_id)
    return replace(config, users=users, rooms=rooms)
