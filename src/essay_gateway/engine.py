"""Rotation-retry engine: one logical request, at most one attempt per key.

    Init -> Attempting(i) -> Succeeded
                          -> Rotating -> Attempting(i + 1)
                          -> ExhaustedFailed       (i + 1 == N)
                          -> ShortCircuitFailed    (upstream 4xx other than 429)

The attempt counter i runs 0..N-1 and is separate from the key index, which
starts at whatever the shared store says and wraps modulo N. The store is
read once per run and written after every failed attempt, so the next
request starts roughly where this one left off. A success does not move the
index: the working key stays current.

Retries are immediate; the pool size is the only throttle. When the caller
goes away the run stops, including in the middle of an upstream call.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from essay_gateway.errors import (
    CancelledRunError,
    ExhaustionError,
    GatewayError,
    RetryableUpstreamError,
    UpstreamClientError,
    mask_credential,
)
from essay_gateway.providers._pool import CredentialPool
from essay_gateway.providers.gemini import Outcome, UpstreamOutcome

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attempt:
    number: int  # 0-based attempt counter
    index: int  # key index in the pool
    outcome: UpstreamOutcome


@dataclass(frozen=True)
class GenerationResult:
    """Terminal result of an engine run: text on success, error otherwise."""

    text: str = ""
    error: GatewayError | None = None
    attempts: tuple[Attempt, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def classification(self) -> str:
        return "success" if self.error is None else self.error.classification

    @property
    def status_code(self) -> int:
        return 200 if self.error is None else self.error.status_code

    @property
    def message(self) -> str:
        return "" if self.error is None else self.error.message

    @property
    def credential_index(self) -> int | None:
        """Index of the key that produced the text, None on failure."""
        if self.error is None and self.attempts:
            return self.attempts[-1].index
        return None


def to_error(outcome: UpstreamOutcome) -> GatewayError:
    """Exception form of a failed outcome."""
    if outcome.kind is Outcome.CLIENT_ERROR:
        return UpstreamClientError(
            outcome.message or "upstream rejected the request", outcome.status_code
        )
    return RetryableUpstreamError(
        f"{outcome.kind.value}: {outcome.message}" if outcome.message else outcome.kind.value,
        outcome.status_code,
    )


async def _wait_for_abort(should_abort: Callable[[], Awaitable[bool]], interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if await should_abort():
            return


def exhaustion_message(n: int) -> str:
    keys = "key" if n == 1 else f"all {n} keys"
    return (
        f"Tried {keys} in the credential pool and none succeeded "
        "(rate limited, blocked or unavailable). Please try again later."
    )


class RotationEngine:
    """Drives an upstream client across a credential pool.

    store:    async read() -> int, async write(int) -> None (never raise)
    upstream: async generate(credential, payload) -> UpstreamOutcome

    While an upstream call is in flight, should_abort is polled every
    abort_poll_interval seconds.
    """

    def __init__(self, store, upstream, abort_poll_interval: float = 0.1):
        self.store = store
        self.upstream = upstream
        self.abort_poll_interval = abort_poll_interval

    async def _attempt(self, credential: str, payload: dict, should_abort) -> UpstreamOutcome | None:
        """One upstream call. None if the caller went away before it finished."""
        if should_abort is None:
            return await self.upstream.generate(credential, payload)
        call = asyncio.ensure_future(self.upstream.generate(credential, payload))
        watcher = asyncio.ensure_future(_wait_for_abort(should_abort, self.abort_poll_interval))
        try:
            done, _ = await asyncio.wait({call, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (call, watcher):
                task.cancel()
            await asyncio.gather(call, watcher, return_exceptions=True)
        if call in done:
            return call.result()
        watcher.result()
        return None

    async def run(
        self,
        credentials: CredentialPool | Iterable[str],
        payload: dict,
        should_abort: Callable[[], Awaitable[bool]] | None = None,
    ) -> GenerationResult:
        """Try each key at most once, starting from the persisted index.

        Raises ConfigError if the pool is empty. Every other failure comes back
        as a GenerationResult.
        """
        pool = credentials if isinstance(credentials, CredentialPool) else CredentialPool(credentials)
        n = len(pool)
        start = pool.normalize(await self.store.read())
        attempts: list[Attempt] = []

        def cancelled(completed: int) -> GenerationResult:
            log.info("Caller went away after %d/%d attempts, stopping", completed, n)
            return GenerationResult(
                error=CancelledRunError("request cancelled"), attempts=tuple(attempts)
            )

        for i in range(n):
            if should_abort is not None and await should_abort():
                return cancelled(i)

            index = pool.normalize(start + i)
            credential = pool.at(index)
            log.info(
                "Attempt %d/%d with key index %d (%s)",
                i + 1,
                n,
                index,
                mask_credential(credential),
            )
            outcome = await self._attempt(credential, payload, should_abort)
            if outcome is None:
                return cancelled(i)
            attempts.append(Attempt(i, index, outcome))

            if outcome.kind is Outcome.SUCCESS:
                log.info("Key index %d succeeded", index)
                return GenerationResult(text=outcome.text, attempts=tuple(attempts))

            if outcome.kind is Outcome.CLIENT_ERROR:
                log.error(
                    "Upstream rejected the request (status %s) with key index %d: %s",
                    outcome.status_code,
                    index,
                    outcome.message,
                )
                return GenerationResult(error=to_error(outcome), attempts=tuple(attempts))

            next_index = pool.normalize(index + 1)
            log.warning(
                "Key index %d failed (%s), rotating to %d",
                index,
                to_error(outcome).message,
                next_index,
            )
            await self.store.write(next_index)

        log.error("All %d keys failed for this request", n)
        return GenerationResult(
            error=ExhaustionError(exhaustion_message(n), [to_error(a.outcome) for a in attempts]),
            attempts=tuple(attempts),
        )
