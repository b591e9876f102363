"""Router service that wires intake, reconciliation and escalation together.

The service:
- Manages adapter and store lifecycle (connect, ping, close)
- Routes chat events to intake or the reconciler with concurrency control
- Runs the escalation scheduler in the background
- Handles graceful shutdown on signals (SIGTERM, SIGINT)
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import structlog

from ..config.schema import RouterConfig
from ..models.message import ChatEvent, ChatMessage, IntakeResult, ReactionEvent
from ..models.signal import (
    Acknowledge,
    AnswerSignal,
    Dismiss,
    MarkerReaction,
    ReconcileOutcome,
    ReplyConfirmation,
    Snooze,
    ThreadReply,
)
from ..utils.async_helpers import KeyedLock, RateLimiter, StartupError
from ..utils.clock import Clock, SystemClock
from ..utils.metrics import get_metrics
from .admin import EscalationAdmin
from .detector import QuestionDetector
from .dispatcher import NotificationDispatcher
from .intake import QuestionIntake
from .reconciler import AnswerReconciler
from .resolver import EscalationTargetResolver
from .scheduler import EscalationScheduler, TickReport

if TYPE_CHECKING:
    from ..adapters.chat.slack import SlackAdapter
    from ..interfaces.chat import ChatEventSource
    from ..interfaces.notifier import Notifier
    from ..interfaces.store import RouterStore

log = structlog.get_logger()

EventOutcome = IntakeResult | ReconcileOutcome | None


class RouterService:
    """Main orchestrator for question tracking and escalation.

    Example:
        service = await create_service(config)
        await service.start()  # Blocks until shutdown signal

        # Or a single scheduler pass without listening for events:
        report = await service.run_once()
    """

    def __init__(
        self,
        config: RouterConfig,
        chat: ChatEventSource,
        store: RouterStore,
        notifier: Notifier,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._chat = chat
        self._store = store
        self._clock = clock or SystemClock()

        # One lock table so signals and escalation claims serialize per question
        locks = KeyedLock()

        rate_limiter = None
        if config.scheduler.outbound_rate_per_second:
            rate_limiter = RateLimiter(rate=config.scheduler.outbound_rate_per_second)

        self._resolver = EscalationTargetResolver(
            store,
            config.escalation,
            cache_ttl_seconds=config.resolver.cache_ttl_seconds,
            cache_size=config.resolver.cache_size,
        )
        self._dispatcher = NotificationDispatcher(
            notifier, config.scheduler, clock=self._clock, rate_limiter=rate_limiter
        )
        self._scheduler = EscalationScheduler(
            store,
            self._resolver,
            self._dispatcher,
            store,
            config.scheduler,
            clock=self._clock,
            locks=locks,
        )
        self._reconciler = AnswerReconciler(
            store, self._resolver, config.answers, clock=self._clock, locks=locks
        )
        self._intake = QuestionIntake(
            store,
            QuestionDetector(min_length=config.detection.min_length),
            chat=chat,
            tracked_reaction=config.reactions.tracked,
            detection=config.detection,
        )
        self._admin = EscalationAdmin(store, self._resolver, notifier=notifier)

        self._semaphore = asyncio.Semaphore(config.runtime.max_concurrent)
        self._active_tasks: set[asyncio.Task[EventOutcome]] = set()

        self._running = False
        self._shutdown_event: asyncio.Event | None = None

        self._events_processed = 0
        self._errors_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scheduler(self) -> EscalationScheduler:
        return self._scheduler

    @property
    def reconciler(self) -> AnswerReconciler:
        return self._reconciler

    @property
    def intake(self) -> QuestionIntake:
        return self._intake

    @property
    def admin(self) -> EscalationAdmin:
        return self._admin

    @property
    def stats(self) -> dict[str, int]:
        return {
            "events_processed": self._events_processed,
            "errors_count": self._errors_count,
            "active_tasks": len(self._active_tasks),
        }

    async def start(self) -> None:
        """Start the service and block until shutdown.

        Raises:
            StartupError: If the store is unreachable or the chat connection fails
        """
        if self._running:
            log.warning("service_already_running")
            return

        log.info(
            "service_starting",
            config=self._config.model_dump(exclude={"slack", "store"}, mode="json"),
        )

        try:
            if not await self._store.ping():
                raise StartupError("Question store is unreachable")

            await self._chat.connect()
            self._shutdown_event = asyncio.Event()
            self._setup_signal_handlers()

            self._scheduler.start()
            self._running = True
            log.info("service_started")

            await self._listen_for_events()

        except Exception as e:
            log.exception("service_startup_failed", error=str(e))
            await self._cleanup()
            if isinstance(e, StartupError):
                raise
            raise StartupError(f"Failed to start service: {e}") from e

    async def stop(self) -> None:
        """Drain in-flight events, stop the scheduler and release resources."""
        if not self._running:
            log.warning("service_not_running")
            return

        log.info("service_stopping", active_tasks=len(self._active_tasks))

        if self._shutdown_event:
            self._shutdown_event.set()

        await self._wait_for_tasks()
        await self._cleanup()

        self._running = False
        log.info(
            "service_stopped",
            events_processed=self._events_processed,
            errors=self._errors_count,
        )

    async def run_once(self) -> TickReport | None:
        """Run a single escalation tick and release the store."""
        if not await self._store.ping():
            raise StartupError("Question store is unreachable")
        try:
            return await self._scheduler.run_tick()
        finally:
            await self._store.close()

    async def process_event(self, event: ChatEvent) -> EventOutcome:
        """Handle one event under the concurrency limit; errors are logged."""
        metrics = get_metrics()
        async with self._semaphore:
            metrics.active_tasks.inc()
            try:
                outcome = await self.handle_event(event)
                self._events_processed += 1
                return outcome
            except Exception as e:
                log.exception(
                    "event_processing_error",
                    message_id=event.message_id,
                    error=str(e),
                )
                self._errors_count += 1
                return None
            finally:
                metrics.active_tasks.dec()

    async def handle_event(self, event: ChatEvent) -> EventOutcome:
        """Route a message to intake or the reconciler, or a reaction to a signal."""
        if isinstance(event, ChatMessage):
            if event.is_thread_reply and event.thread_id is not None:
                return await self._reconciler.apply(
                    ThreadReply(
                        workspace_id=event.workspace_id,
                        thread_id=event.thread_id,
                        reply_message_id=event.message_id,
                        author_id=event.user_id,
                        is_bot=event.is_bot,
                    )
                )
            return await self._intake.handle_message(event)

        answer_signal = await self._signal_for_reaction(event)
        if answer_signal is None:
            return None
        return await self._reconciler.apply(answer_signal)

    async def _signal_for_reaction(self, event: ReactionEvent) -> AnswerSignal | None:
        reactions = self._config.reactions
        name = event.reaction

        if name in reactions.answered:
            tracked = await self._store.find_by_message(event.workspace_id, event.message_id)
            if tracked is not None:
                return MarkerReaction(event.workspace_id, event.message_id, event.user_id)

            # Marker on a reply confirms that reply as the answer
            thread_id = await self._chat.get_thread_id(event.channel_id, event.message_id)
            if not thread_id or thread_id == event.message_id or not event.item_user_id:
                return None
            return ReplyConfirmation(
                workspace_id=event.workspace_id,
                thread_id=thread_id,
                reply_message_id=event.message_id,
                reply_author_id=event.item_user_id,
                confirmed_by=event.user_id,
            )

        if name in reactions.dismiss:
            return Dismiss(event.workspace_id, event.message_id, event.user_id)

        if name in reactions.snooze:
            return Snooze(
                workspace_id=event.workspace_id,
                message_id=event.message_id,
                duration_minutes=self._config.answers.default_snooze_minutes,
                user_id=event.user_id,
            )

        if name in reactions.acknowledge:
            return Acknowledge(event.workspace_id, event.message_id, event.user_id)

        return None

    async def _listen_for_events(self) -> None:
        log.info("starting_event_listener")

        try:
            async for event in self._chat.listen():
                if self._shutdown_event and self._shutdown_event.is_set():
                    log.info("shutdown_signal_received_stopping_listener")
                    break

                task = asyncio.create_task(
                    self.process_event(event),
                    name=f"process_{event.message_id}",
                )
                self._active_tasks.add(task)
                task.add_done_callback(self._active_tasks.discard)

        except asyncio.CancelledError:
            log.info("event_listener_cancelled")

    async def _wait_for_tasks(self) -> None:
        """Wait for active tasks to complete with timeout."""
        if not self._active_tasks:
            return

        log.info("waiting_for_active_tasks", count=len(self._active_tasks))

        done, pending = await asyncio.wait(
            self._active_tasks,
            timeout=self._config.runtime.shutdown_timeout,
        )

        if pending:
            log.warning("cancelling_pending_tasks", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        log.info("tasks_completed", completed=len(done), cancelled=len(pending))

    async def _cleanup(self) -> None:
        """Stop background work and release connections."""
        log.debug("cleaning_up_resources")

        await self._scheduler.stop()

        try:
            await self._chat.disconnect()
        except Exception as e:
            log.warning("chat_disconnect_error", error=str(e))

        try:
            await self._store.close()
        except Exception as e:
            log.warning("store_close_error", error=str(e))

        self._active_tasks.clear()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s: asyncio.create_task(self._handle_signal(s)),
                sig,
            )
            log.debug("signal_handler_registered", signal=sig.name)

    async def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("received_signal", signal=sig.name)
        await self.stop()


async def create_service(config: RouterConfig) -> RouterService:
    """Build a RouterService with adapters chosen by configuration.

    Raises:
        ValueError: If configuration is incomplete
    """
    store = await _create_store(config)
    chat = _create_chat_adapter(config)
    return RouterService(config, chat, store, chat)


async def _create_store(config: RouterConfig) -> RouterStore:
    if config.store.backend == "memory":
        from ..adapters.store.memory import InMemoryStore

        return InMemoryStore()

    from ..adapters.store.sql import SqlStore

    store = SqlStore.from_config(config.store)
    if config.store.create_schema:
        await store.create_schema()
    return store


def _create_chat_adapter(config: RouterConfig) -> SlackAdapter:
    if not config.slack:
        raise ValueError("Slack configuration is required to run the router")

    from ..adapters.chat.slack import SlackAdapter

    return SlackAdapter(config.slack)
