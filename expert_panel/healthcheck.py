"""Provider health checks: ping each backend before serving requests."""

import asyncio
import logging

from expert_panel.providers.base import ReasoningProvider

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 15.0


async def _check_one(name: str, provider: ReasoningProvider, timeout_sec: float) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(
            provider.complete(provider.ping_prompt(), timeout_sec),
            timeout=timeout_sec,
        )
        return name, True, ""
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        return name, False, str(exc)


async def run_health_checks(
    providers: dict[str, ReasoningProvider],
    timeout_sec: float = _TIMEOUT_SEC,
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p, timeout_sec) for n, p in providers.items()))
    return {name: (ok, err) for name, ok, err in results}
