"""Parallel fan-out of one request context to the selected experts."""

import asyncio
import logging
import math
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone

from expert_panel.breaker import BreakerBoard
from expert_panel.context import RequestContext
from expert_panel.errors import AllExpertsFailed, ExpertInvocationError, ExpertTimeout, InvalidRequest
from expert_panel.models import ExpertDescriptor, ExpertResponse
from expert_panel.providers.base import ProviderReply, ReasoningProvider

logger = logging.getLogger(__name__)

TIMEOUT = "timeout"
CIRCUIT_OPEN = "circuit-open"


def _failed(expert_id: str, reason: str, latency_ms: float) -> ExpertResponse:
    return ExpertResponse(
        expert_id=expert_id,
        text="",
        self_reported_confidence=0.0,
        latency_ms=latency_ms,
        produced_at=datetime.now(timezone.utc),
        failed=True,
        failure_reason=reason,
    )


def _check_reply(expert_id: str, reply: ProviderReply) -> None:
    if not isinstance(reply, ProviderReply):
        raise ExpertInvocationError(expert_id, f"Malformed output: unexpected reply type {type(reply).__name__}")
    if not reply.text or not reply.text.strip():
        raise ExpertInvocationError(expert_id, "Malformed output: empty answer")
    confidence = reply.confidence
    if not isinstance(confidence, (int, float)) or math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        raise ExpertInvocationError(expert_id, f"Malformed output: confidence {confidence!r} outside [0, 1]")


class Dispatcher:
    """Issues one call per expert concurrently and collects whatever arrives in time.

    Every expert gets its own deadline (expert_timeout_sec, capped by the
    overall deadline). Calls still running at the overall deadline are
    cancelled and recorded as timeouts; late results are discarded.
    Individual failures never abort the fan-out.
    """

    def __init__(
        self,
        providers: Mapping[str, ReasoningProvider],
        *,
        expert_timeout_sec: float,
        max_concurrency: int = 6,
        breakers: BreakerBoard | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._providers = dict(providers)
        self._expert_timeout = expert_timeout_sec
        self._max_concurrency = max_concurrency
        self._breakers = breakers

    async def dispatch(
        self,
        context: RequestContext,
        experts: Sequence[ExpertDescriptor],
        overall_timeout_sec: float,
    ) -> list[ExpertResponse]:
        """Run all experts against context.

        Returns:
            One ExpertResponse per expert, in the order experts were given
            (registry order), failed ones included.

        Raises:
            InvalidRequest: If no experts were selected.
            AllExpertsFailed: If no expert produced a usable response.
        """
        if not experts:
            raise InvalidRequest("No experts selected for dispatch")

        loop = asyncio.get_running_loop()
        dispatch_start = loop.time()
        overall_deadline = dispatch_start + overall_timeout_sec
        semaphore = asyncio.Semaphore(self._max_concurrency)

        logger.info(
            "Dispatching %s to %d experts (expert deadline %.0fms, overall %.0fms)",
            context.request.id,
            len(experts),
            self._expert_timeout * 1000,
            overall_timeout_sec * 1000,
        )

        tasks = {
            expert.id: asyncio.create_task(
                self._run_expert(expert, context, semaphore, overall_deadline),
                name=f"expert:{expert.id}",
            )
            for expert in experts
        }

        try:
            done, pending = await asyncio.wait(tasks.values(), timeout=overall_timeout_sec)
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        elapsed_ms = (loop.time() - dispatch_start) * 1000
        responses: list[ExpertResponse] = []
        for expert in experts:
            task = tasks[expert.id]
            if task in done:
                responses.append(task.result())
            else:
                logger.warning("Expert %s missed the overall deadline for %s", expert.id, context.request.id)
                self._record(expert.id, ok=False)
                responses.append(_failed(expert.id, TIMEOUT, elapsed_ms))

        succeeded = sum(1 for r in responses if not r.failed)
        logger.info(
            "Dispatch for %s complete: %d/%d experts succeeded in %.0fms",
            context.request.id,
            succeeded,
            len(responses),
            elapsed_ms,
        )

        if not succeeded:
            raise AllExpertsFailed(responses)
        return responses

    async def _run_expert(
        self,
        expert: ExpertDescriptor,
        context: RequestContext,
        semaphore: asyncio.Semaphore,
        overall_deadline: float,
    ) -> ExpertResponse:
        """Call a single expert. Never raises: failures become failed responses."""
        breaker = self._breakers.for_expert(expert.id) if self._breakers else None
        if breaker is not None and not breaker.allow():
            logger.warning("Expert %s skipped: circuit open", expert.id)
            return _failed(expert.id, CIRCUIT_OPEN, 0.0)

        provider = self._providers.get(expert.provider)
        if provider is None:
            logger.warning("Expert %s has no provider %r", expert.id, expert.provider)
            return _failed(expert.id, f"no provider configured: {expert.provider}", 0.0)

        async with semaphore:
            loop = asyncio.get_running_loop()
            start = loop.time()
            deadline = min(start + self._expert_timeout, overall_deadline)
            try:
                reply = await asyncio.wait_for(
                    provider.invoke(expert, context, deadline),
                    timeout=max(0.0, deadline - start),
                )
                _check_reply(expert.id, reply)
            except (TimeoutError, ExpertTimeout):
                latency_ms = (loop.time() - start) * 1000
                logger.warning("Expert %s timed out after %.0fms", expert.id, latency_ms)
                self._record(expert.id, ok=False)
                return _failed(expert.id, TIMEOUT, latency_ms)
            except ExpertInvocationError as exc:
                logger.warning("Expert %s failed: %s", expert.id, exc)
                self._record(expert.id, ok=False)
                return _failed(expert.id, exc.reason, (loop.time() - start) * 1000)
            except Exception as exc:
                logger.warning("Expert %s unexpected failure: %s", expert.id, exc)
                self._record(expert.id, ok=False)
                return _failed(expert.id, f"unexpected error: {exc}", (loop.time() - start) * 1000)

            self._record(expert.id, ok=True)
            return ExpertResponse(
                expert_id=expert.id,
                text=reply.text.strip(),
                self_reported_confidence=float(reply.confidence),
                latency_ms=(loop.time() - start) * 1000,
                produced_at=datetime.now(timezone.utc),
            )

    def _record(self, expert_id: str, *, ok: bool) -> None:
        if self._breakers is None:
            return
        breaker = self._breakers.for_expert(expert_id)
        if ok:
            breaker.record_success()
        else:
            breaker.record_failure()
