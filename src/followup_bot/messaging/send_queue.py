"""
Single-lane outbound send queue.

Every outbound message goes through one :class:`SendQueue`. It is the only
component that talks to the channel and the only one that mutates the rate
limit counters, so a burst of due follow-ups can never exceed the configured
ceilings or send two messages at once.

Per drain cycle, each dequeued intent is:
1. Validated (still deliverable for its contact)
2. Admitted by the :class:`~followup_bot.messaging.send_gate.SendGate`
3. Delayed by a bounded random jitter
4. Re-validated and re-admitted (state may have changed during the sleep)
5. Sent with a bounded timeout

A global denial (window closed, disconnected, global ceiling hit) puts the
intent back at the head and ends the cycle. A contact-specific denial moves it
to the tail and the cycle continues with the next contact. A failed send is
retried once on the next cycle and then dropped. If a cycle is interrupted by an
exception or cancellation, the undelivered intent goes back to the head.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from followup_bot.core.models import IntentKind, SendIntent, SendOutcome, utc_now
from followup_bot.humanizer.timing import SendJitter
from followup_bot.messaging.channel import MessagingChannel
from followup_bot.messaging.send_gate import SendGate

logger = logging.getLogger(__name__)

MAX_SEND_ATTEMPTS = 2

# Returns a reason string when the intent must be dropped, None when deliverable
IntentValidator = Callable[[SendIntent, datetime], Optional[str]]
SentCallback = Callable[[SendIntent, datetime], None]
DroppedCallback = Callable[[SendIntent, str], None]


@dataclass
class DrainReport:
    """What one drain cycle did."""
    sent: int = 0
    failed: int = 0
    dropped: int = 0
    deferred: int = 0  # contact-specific denials moved to the tail
    stopped_reason: Optional[str] = None  # global denial that ended the cycle


class SendQueue:
    """
    FIFO of :class:`SendIntent` drained by a single worker.

    Callbacks are plain synchronous functions so the state they mutate is
    never interleaved with another coroutine.

    Attributes:
        gate: Admission check and counter commit.
        channel: Delivery collaborator.
        jitter: Source of the pre-send delay.
        validator: Decides whether an intent is still deliverable.
        on_sent: Called after a confirmed send (after counters are committed).
        on_dropped: Called when an intent leaves the queue without being sent.
    """

    def __init__(
        self,
        gate: SendGate,
        channel: MessagingChannel,
        jitter: SendJitter,
        validator: Optional[IntentValidator] = None,
        on_sent: Optional[SentCallback] = None,
        on_dropped: Optional[DroppedCallback] = None,
        timeout_provider: Callable[[], float] = lambda: 30.0,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gate = gate
        self.channel = channel
        self.jitter = jitter
        self.validator = validator or (lambda intent, now: None)
        self.on_sent = on_sent
        self.on_dropped = on_dropped
        self.timeout_provider = timeout_provider
        self.clock = clock
        self.sleep = sleep

        self._queue: deque[SendIntent] = deque()
        self._in_flight: Optional[SendIntent] = None
        self._in_flight_cancelled = False
        self._draining = False
        self._results: dict[str, asyncio.Future] = {}
        self.last_error: Optional[str] = None

    # =========================================================================
    # QUEUE MANIPULATION (synchronous)
    # =========================================================================

    @property
    def size(self) -> int:
        """Queued plus in-flight intents."""
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    @property
    def draining(self) -> bool:
        return self._draining

    def enqueue(self, intent: SendIntent, front: bool = False) -> bool:
        """Append ``intent`` unless it is undeliverable or already pending.

        Intents carrying the same ``meta["key"]`` for the same contact and kind
        are considered duplicates.

        Args:
            intent: Intent to queue.
            front: Put it at the head instead of the tail.

        Returns:
            True if the intent was queued.
        """
        reason = self.validator(intent, self.clock())
        if reason:
            logger.debug(f"Not queueing {intent.kind} for {intent.handle}: {reason}")
            return False
        key = intent.meta.get("key")
        if key and any(
            p.handle == intent.handle and p.kind == intent.kind and p.meta.get("key") == key
            for p in self._pending()
        ):
            logger.debug(f"Duplicate {intent.kind}/{key} for {intent.handle} ignored")
            return False
        if front:
            self._queue.appendleft(intent)
        else:
            self._queue.append(intent)
        return True

    def submit(self, intent: SendIntent, front: bool = True) -> "asyncio.Future[SendOutcome]":
        """Queue an intent and return a future resolved with its outcome.

        Manual sends go to the head by default so the operator is not stuck
        behind a backlog of automatic follow-ups.
        """
        future = asyncio.get_running_loop().create_future()
        if not self.enqueue(intent, front=front):
            future.set_result(SendOutcome(ok=False, error="rejected"))
            return future
        self._results[intent.id] = future
        return future

    def remove(self, handle: str, kinds: Optional[Iterable[str]] = None) -> list[SendIntent]:
        """Strip pending intents for ``handle`` (optionally only some kinds).

        An in-flight intent that matches is flagged and dropped by the worker
        before it reaches the channel.

        Returns:
            The removed queued intents.
        """
        kind_set = {IntentKind(k).value for k in kinds} if kinds is not None else None

        def matches(intent: SendIntent) -> bool:
            return intent.handle == handle and (kind_set is None or intent.kind in kind_set)

        removed = [i for i in self._queue if matches(i)]
        if removed:
            self._queue = deque(i for i in self._queue if not matches(i))
            for intent in removed:
                self._resolve(intent, SendOutcome(ok=False, error="cancelled"))
        if self._in_flight is not None and matches(self._in_flight):
            self._in_flight_cancelled = True
        return removed

    def has_pending(self, handle: str, kinds: Optional[Iterable[str]] = None) -> bool:
        """Whether ``handle`` has a queued or in-flight intent of ``kinds``."""
        kind_set = {IntentKind(k).value for k in kinds} if kinds is not None else None
        return any(
            i.handle == handle and (kind_set is None or i.kind in kind_set)
            for i in self._pending()
        )

    def pending(self) -> list[SendIntent]:
        return list(self._pending())

    def snapshot(self) -> list[dict]:
        """Queued automatic intents, serialized for persistence."""
        return [
            i.model_dump(by_alias=True, mode="json")
            for i in self._queue
            if i.is_automatic
        ]

    def restore(self, items: Iterable[dict]) -> list[SendIntent]:
        """Re-queue previously snapshotted intents; invalid entries are skipped."""
        restored = []
        for raw in items:
            try:
                intent = SendIntent.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping unreadable queued intent: {e}")
                continue
            if intent.is_automatic and self.enqueue(intent):
                restored.append(intent)
        return restored

    def _pending(self) -> Iterable[SendIntent]:
        if self._in_flight is not None and not self._in_flight_cancelled:
            yield self._in_flight
        yield from self._queue

    # =========================================================================
    # WORKER
    # =========================================================================

    async def drain_once(self) -> DrainReport:
        """Process the items queued at the start of the cycle, at most once each.

        Re-entrant calls while a cycle is running return an empty report, so
        there is never more than one send in flight.
        """
        report = DrainReport()
        if self._draining:
            return report
        self._draining = True
        retry_next_cycle: list[SendIntent] = []
        try:
            budget = len(self._queue)
            while budget > 0 and self._queue:
                budget -= 1
                intent = self._queue.popleft()
                self._in_flight = intent
                self._in_flight_cancelled = False
                delivered = False
                try:
                    if not self._admit(intent, report):
                        if report.stopped_reason:
                            break
                        continue

                    await self.sleep(self.jitter.get_delay())

                    if self._in_flight_cancelled:
                        self._drop(intent, "cancelled", report)
                        continue
                    if not self._admit(intent, report):
                        if report.stopped_reason:
                            break
                        continue

                    ok, error = await self._deliver(intent)
                    if ok:
                        delivered = True
                        self._complete(intent, report)
                    else:
                        self._fail(intent, error, report, retry_next_cycle)
                except (Exception, asyncio.CancelledError) as e:
                    self._recover(intent, delivered, e)
                    raise
                finally:
                    self._in_flight = None
                    self._in_flight_cancelled = False
        finally:
            self._queue.extend(retry_next_cycle)
            self._draining = False

        if report.sent or report.dropped or report.failed:
            logger.info(
                f"Drain cycle: sent={report.sent} failed={report.failed} "
                f"dropped={report.dropped} deferred={report.deferred} queue={self.size}"
            )
        return report

    def _admit(self, intent: SendIntent, report: DrainReport) -> bool:
        """Validate and gate one intent; requeue or drop it when not admitted."""
        now = self.clock()
        reason = self.validator(intent, now)
        if reason:
            self._drop(intent, reason, report)
            return False

        decision = self.gate.check(intent.handle, now)
        if decision.allowed:
            return True

        denial = decision.reason.value
        if intent.kind == IntentKind.MANUAL.value:
            # Manual sends report the denial to the caller instead of waiting
            self._resolve(intent, SendOutcome(ok=False, error=denial))
            logger.info(f"Manual send to {intent.handle} denied: {denial}")
            if decision.reason.is_global:
                report.stopped_reason = denial
            return False

        if decision.reason.is_global:
            self._queue.appendleft(intent)
            report.stopped_reason = denial
            logger.debug(f"Drain cycle stopped: {denial}")
        else:
            self._queue.append(intent)
            report.deferred += 1
        return False

    async def _deliver(self, intent: SendIntent) -> tuple[bool, Optional[str]]:
        timeout = self.timeout_provider()
        try:
            ok = await asyncio.wait_for(self.channel.send(intent.handle, intent.text), timeout)
        except asyncio.TimeoutError:
            return False, f"timeout after {timeout}s"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return False, str(e) or type(e).__name__
        return (True, None) if ok else (False, "not acknowledged")

    def _complete(self, intent: SendIntent, report: DrainReport) -> None:
        now = self.clock()
        self.gate.commit(intent.handle, now)
        report.sent += 1
        logger.info(f"Sent {intent.kind} to {intent.handle}")
        if self.on_sent:
            self.on_sent(intent, now)
        self._resolve(intent, SendOutcome(ok=True))

    def _fail(
        self,
        intent: SendIntent,
        error: Optional[str],
        report: DrainReport,
        retry_next_cycle: list[SendIntent],
    ) -> None:
        intent.attempts += 1
        report.failed += 1
        self.last_error = f"send to {intent.handle} failed: {error}"
        logger.warning(f"Send {intent.kind} to {intent.handle} failed ({intent.attempts}): {error}")
        if intent.kind == IntentKind.MANUAL.value:
            self._resolve(intent, SendOutcome(ok=False, error=error))
        elif intent.attempts >= MAX_SEND_ATTEMPTS:
            self._drop(intent, f"failed after {intent.attempts} attempts: {error}", report)
        else:
            retry_next_cycle.append(intent)

    def _drop(self, intent: SendIntent, reason: str, report: DrainReport) -> None:
        report.dropped += 1
        logger.warning(f"Dropped {intent.kind} for {intent.handle}: {reason}")
        self._resolve(intent, SendOutcome(ok=False, error=reason))
        if self.on_dropped:
            self.on_dropped(intent, reason)

    def _recover(self, intent: SendIntent, delivered: bool, error: BaseException) -> None:
        """Keep an intent whose cycle was interrupted by an exception or cancellation."""
        if delivered:
            self._resolve(intent, SendOutcome(ok=True))
            return
        if self._in_flight_cancelled:
            self._resolve(intent, SendOutcome(ok=False, error="cancelled"))
            if self.on_dropped:
                self.on_dropped(intent, "cancelled")
            return
        if any(i is intent for i in self._queue):
            return
        self._queue.appendleft(intent)
        if not isinstance(error, asyncio.CancelledError):
            self.last_error = f"drain interrupted at {intent.handle}: {type(error).__name__}: {error}"
            logger.error(f"Drain cycle failed, {intent.kind} for {intent.handle} requeued: {error}")

    def _resolve(self, intent: SendIntent, outcome: SendOutcome) -> None:
        future = self._results.pop(intent.id, None)
        if future is not None and not future.done():
            future.set_result(outcome)
