"""Free-trial usage checks run after each completed chat turn."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

import httpx

__all__ = [
    "FREE_TRIAL_PROVIDER",
    "FreeTrialClient",
    "FreeTrialMonitor",
    "FreeTrialStatus",
    "HttpFreeTrialClient",
    "check_free_trial_exceeded",
    "uses_free_trial",
]

LOGGER = logging.getLogger(__name__)

FREE_TRIAL_PROVIDER = "free-trial"


@dataclass(slots=True, frozen=True)
class FreeTrialStatus:
    chat_count: int | None
    chat_limit: int

    @property
    def exceeded(self) -> bool:
        return bool(self.chat_count) and self.chat_count > self.chat_limit  # type: ignore[operator]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> FreeTrialStatus:
        count = payload.get("chat_count", payload.get("chatCount"))
        limit = payload.get("chat_limit", payload.get("chatLimit", 0))
        return cls(
            chat_count=int(count) if count is not None else None,
            chat_limit=int(limit or 0),
        )


@runtime_checkable
class FreeTrialClient(Protocol):
    async def get_status(self) -> FreeTrialStatus | None:  # pragma: no cover - protocol stub
        ...


class HttpFreeTrialClient:
    """Fetch the free-trial status from the control plane."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._timeout = timeout
        self._transport = transport

    async def get_status(self) -> FreeTrialStatus | None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(self._url, headers=self._headers)
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, Mapping):
            return None
        return FreeTrialStatus.from_payload(payload)


def uses_free_trial(config: Any) -> bool:
    model = getattr(config, "selected_chat_model", None)
    return getattr(model, "provider_name", None) == FREE_TRIAL_PROVIDER


async def check_free_trial_exceeded(
    config: Any,
    client: FreeTrialClient,
    notify: Callable[[], None],
) -> bool:
    """Call ``notify`` when the free-trial chat count is over its limit.

    Skipped unless the selected model runs on the free trial. Failures are
    logged and swallowed; the return value reports whether ``notify`` ran.
    """

    if config is not None and not uses_free_trial(config):
        return False
    try:
        status = await client.get_status()
        if status is not None and status.exceeded:
            LOGGER.info("Free trial exceeded (%s/%s chats)", status.chat_count, status.chat_limit)
            notify()
            return True
    except Exception as exc:
        LOGGER.error("Error checking free trial status: %s", exc)
    return False


class FreeTrialMonitor:
    """Binds a client and a notification callback for the orchestrator."""

    def __init__(self, client: FreeTrialClient, notify: Callable[[], None]) -> None:
        self._client = client
        self._notify = notify

    async def check(self, config: Any) -> bool:
        return await check_free_trial_exceeded(config, self._client, self._notify)
