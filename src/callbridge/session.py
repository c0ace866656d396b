"""
Relay session: one ConversationRelay socket, one phone call.

Inbound events are decoded and queued; a single worker processes them one at
a time in arrival order, so a turn always finishes (and has spoken at least
once) before the next utterance is looked at.

Each caller utterance is answered by, in order:
1. local intents (transfer, delivery pricing by ZIP, fixed store topics)
2. the OpenAI Realtime socket (realtime mode), streamed as partial tokens
3. a single chat completion (completion mode)
4. an apology, when no model is configured

Interface is compatible with `server/app.py`:
- `start()`
- `close()`
- `handle_message(raw_message)`
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import structlog

from src.callbridge.config import Config, get_config
from src.callbridge.intents import (
    UNHANDLED,
    IntentTag,
    apology_reply,
    classify,
    render_reply,
    transfer_acknowledgment,
)
from src.callbridge.llm import (
    CompletionClient,
    RealtimeTextClient,
    UpstreamError,
    create_realtime_client,
    fallback_reply,
    get_completion_client,
    get_system_prompt,
)
from src.callbridge.pricing import PricingStore, get_pricing_store
from src.callbridge.registry import SessionRegistry, get_registry
from src.callbridge.relay_protocol import (
    OUTBOUND_SCHEMAS,
    RelayDTMFEvent,
    RelayErrorEvent,
    RelayEventType,
    RelayInterruptEvent,
    RelayPromptEvent,
    RelaySetupEvent,
    is_schema_rejection,
    parse_relay_message,
    render_text_message,
)
from src.callbridge.speech import sanitize_reply, speak_phone_number
from src.callbridge.transfer import create_transfer_client

logger = structlog.get_logger(__name__)

NOT_HEARD_REPLY = "Sorry, I didn't catch that. Could you say it again?"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


def split_at_whitespace(buffer: str) -> Tuple[str, str]:
    """Split streamed text into (complete words ready to send, trailing partial word)."""
    cut = max(buffer.rfind(" "), buffer.rfind("\n"), buffer.rfind("\t"))
    if cut < 0:
        return "", buffer
    return buffer[: cut + 1], buffer[cut + 1:]


class RelaySession:
    """Per-call state machine: CONNECTING -> ACTIVE -> CLOSING -> CLOSED."""

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        close_caller: Optional[Callable[[], Awaitable[None]]] = None,
        config: Optional[Config] = None,
        pricing_store: Optional[PricingStore] = None,
        completion_client: Optional[CompletionClient] = None,
        realtime_client: Optional[RealtimeTextClient] = None,
        transfer_client: Optional[Any] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self._close_caller = close_caller
        self._pricing = pricing_store if pricing_store is not None else get_pricing_store()
        self._completion = completion_client
        self._realtime = realtime_client
        self._transfer_client = transfer_client
        self._registry = registry if registry is not None else get_registry()

        self.session_id: str = ""
        self.call_sid: str = ""
        self.state: SessionState = SessionState.CONNECTING

        self._queue: asyncio.Queue[Tuple[RelayEventType, Any]] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None

        self._prompt_parts: List[str] = []
        self._schema_index: int = 0
        self._last_outbound: Optional[Tuple[str, bool]] = None
        self._system_prompt: str = ""

        self.turns: int = 0
        self.messages_sent: int = 0

    @property
    def schema_index(self) -> int:
        return self._schema_index

    @property
    def model_attached(self) -> bool:
        return self._realtime is not None

    async def start(self) -> None:
        self.session_id = self._registry.register(self)
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._event_worker())
        logger.info("Relay session started", session_id=self.session_id)

    async def handle_message(self, raw_message: Any) -> None:
        """Decode and queue one inbound message. Malformed input is dropped."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return

        try:
            event_type, event = parse_relay_message(raw_message)
        except ValueError as e:
            logger.warning("Dropping relay message", session_id=self.session_id, error=str(e))
            return

        self._queue.put_nowait((event_type, event))

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def close(self) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING

        current = asyncio.current_task()
        tasks = [t for t in (self._worker_task, self._watch_task) if t and not t.done() and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        while not self._queue.empty():
            try:
                self._queue.get_nowait()
                self._queue.task_done()
            except asyncio.QueueEmpty:
                break

        if self._realtime is not None:
            await self._realtime.close()
            self._realtime = None

        self._registry.unregister(self.session_id)
        self.state = SessionState.CLOSED

        logger.info(
            "Relay session closed",
            session_id=self.session_id,
            call_sid=self.call_sid,
            turns=self.turns,
            messages_sent=self.messages_sent,
        )

    async def _event_worker(self) -> None:
        """Background worker that processes queued events sequentially."""
        try:
            while True:
                event_type, event = await self._queue.get()
                try:
                    await self._dispatch(event_type, event)
                except Exception as e:
                    logger.error(
                        "Relay event failed",
                        session_id=self.session_id,
                        event_type=event_type.value,
                        error=str(e),
                    )
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            pass

    async def _dispatch(self, event_type: RelayEventType, event: Any) -> None:
        if event_type == RelayEventType.SETUP:
            await self._handle_setup(event)
        elif event_type == RelayEventType.PROMPT:
            await self._handle_prompt(event)
        elif event_type == RelayEventType.INTERRUPT:
            self._handle_interrupt(event)
        elif event_type == RelayEventType.DTMF:
            self._handle_dtmf(event)
        elif event_type == RelayEventType.ERROR:
            await self._handle_error(event)

    async def _handle_setup(self, event: RelaySetupEvent) -> None:
        self.call_sid = event.call_sid
        self.state = SessionState.ACTIVE

        logger.info(
            "Call started (relay)",
            session_id=self.session_id,
            call_sid=event.call_sid,
            relay_session_id=event.session_id,
            from_number=event.from_number,
        )

        if self._realtime is None:
            return

        try:
            await self._realtime.open()
        except UpstreamError as e:
            logger.error("OpenAI Realtime unavailable; local answers only", call_sid=self.call_sid, error=str(e))
            self._realtime = None
            await self._send_text(apology_reply(self.config.business), last=True)
            if not self.config.local_intents_enabled:
                await self._hang_up_caller()
            return

        self._watch_task = asyncio.create_task(self._watch_model(self._realtime))

    async def _watch_model(self, client: RealtimeTextClient) -> None:
        """Drop the model when its socket goes away while the caller is still here."""
        try:
            await client.wait_closed()
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.debug("Model watcher error", error=str(e))

        if self.state != SessionState.ACTIVE or self._realtime is not client:
            return

        logger.warning("OpenAI Realtime socket closed mid-call", call_sid=self.call_sid)
        self._realtime = None
        if not self.config.local_intents_enabled:
            await self._send_text(apology_reply(self.config.business), last=True)
            await self._hang_up_caller()

    async def _hang_up_caller(self) -> None:
        if self._close_caller is None:
            return
        try:
            await self._close_caller()
        except Exception as e:
            logger.error("Failed to close caller socket", call_sid=self.call_sid, error=str(e))

    async def _handle_prompt(self, event: RelayPromptEvent) -> None:
        if self.state == SessionState.CONNECTING:
            logger.warning("Prompt before setup; treating session as active", session_id=self.session_id)
            self.state = SessionState.ACTIVE

        if event.voice_prompt.strip():
            self._prompt_parts.append(event.voice_prompt.strip())
        if not event.last:
            return

        utterance = " ".join(self._prompt_parts)
        self._prompt_parts = []
        await self._run_turn(utterance)

    async def _run_turn(self, utterance: str) -> None:
        """Answer one utterance. Always speaks at least once."""
        self.turns += 1
        sent_before = self.messages_sent
        try:
            await self._answer(utterance)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Turn failed", call_sid=self.call_sid, error=str(e))
            if self.messages_sent == sent_before:
                await self._send_text(fallback_reply(self.config.business), last=True)

    async def _answer(self, utterance: str) -> None:
        if not utterance:
            await self._send_text(NOT_HEARD_REPLY, last=True)
            return

        table = self._pricing.table
        match = classify(utterance, table)
        if not self.config.local_intents_enabled and match.tag != IntentTag.TRANSFER:
            match = UNHANDLED

        logger.info("Utterance classified", call_sid=self.call_sid, intent=match.tag.value, codes=list(match.postal_codes))

        if match.tag == IntentTag.TRANSFER:
            await self._transfer()
            return

        text = render_reply(
            match,
            table,
            self.config.business,
            use_ssml=self.config.use_ssml,
            last_call_minutes=self.config.default_last_call_minutes,
        )
        if text:
            await self._send_text(text, last=True)
            return

        if self._realtime is not None:
            await self._stream_from_model(utterance)
            return

        if self._completion is not None:
            await self._ask_model(utterance)
            return

        await self._send_text(apology_reply(self.config.business), last=True)

    async def _transfer(self) -> None:
        await self._send_text(transfer_acknowledgment(), last=True)

        if self._transfer_client is not None:
            try:
                await self._transfer_client.transfer(self.call_sid)
                return
            except Exception as e:
                logger.error("Transfer failed", call_sid=self.call_sid, error=str(e))
        else:
            logger.warning("Transfer requested but no transfer client configured", call_sid=self.call_sid)

        await self._send_text(
            "Sorry, I couldn't connect you right now. "
            f"You can reach our team directly at {speak_phone_number(self.config.transfer_number)}.",
            last=True,
        )

    async def _ask_model(self, utterance: str) -> None:
        if not self._system_prompt:
            self._system_prompt = get_system_prompt(self.config)
        try:
            reply = await self._completion.ask(self._system_prompt, utterance)
        except UpstreamError as e:
            logger.error("Completion failed; using fallback", call_sid=self.call_sid, error=str(e))
            reply = fallback_reply(self.config.business)
        await self._send_text(reply, last=True)

    async def _stream_from_model(self, utterance: str) -> None:
        """Forward Realtime deltas as they arrive, flushed on word boundaries."""
        buffer = ""
        sent_any = False
        try:
            async for delta in self._realtime.stream_reply(utterance):
                buffer += delta
                ready, buffer = split_at_whitespace(buffer)
                if ready and await self._send_text(ready, last=False, partial=True):
                    sent_any = True
        except UpstreamError as e:
            logger.error("OpenAI Realtime turn failed; using fallback", call_sid=self.call_sid, error=str(e))
            await self._send_text(fallback_reply(self.config.business), last=True)
            return

        if buffer and await self._send_text(buffer, last=False, partial=True):
            sent_any = True

        if not sent_any:
            logger.warning("OpenAI Realtime returned no text; using fallback", call_sid=self.call_sid)
            await self._send_text(fallback_reply(self.config.business), last=True)
            return

        await self._send_text("", last=True)

    def _handle_interrupt(self, event: RelayInterruptEvent) -> None:
        logger.info(
            "Caller interrupted",
            call_sid=self.call_sid,
            heard=event.utterance_until_interrupt[:80],
            duration_ms=event.duration_until_interrupt_ms,
        )

    def _handle_dtmf(self, event: RelayDTMFEvent) -> None:
        logger.info("DTMF received", call_sid=self.call_sid, digit=event.digit)

    async def _handle_error(self, event: RelayErrorEvent) -> None:
        logger.warning("Relay reported error", call_sid=self.call_sid, description=event.description)

        if not self.config.schema_negotiation or not is_schema_rejection(event):
            return

        if self._schema_index >= len(OUTBOUND_SCHEMAS) - 1:
            logger.error("Outbound message rejected in every known shape", call_sid=self.call_sid)
            return

        self._schema_index += 1
        logger.info("Switching outbound message shape", call_sid=self.call_sid, schema_index=self._schema_index)

        if self._last_outbound is not None:
            text, last = self._last_outbound
            await self._send_rendered(text, last)

    async def _send_text(self, token: str, *, last: bool, partial: bool = False) -> bool:
        """
        Sanitize and send one reply. Every outbound path goes through here.

        Returns False when a partial chunk had nothing speakable left.
        """
        business = self.config.business
        text = sanitize_reply(
            token,
            domain=business.domain,
            emails=business.emails,
            use_ssml=self.config.use_ssml,
            partial=partial,
        )
        if partial and not text.strip():
            return False

        await self._send_rendered(text, last)
        return True

    async def _send_rendered(self, text: str, last: bool) -> None:
        self._last_outbound = (text, last)
        message = render_text_message(text, last, self._schema_index)
        try:
            await self._send_message(message)
        except Exception as e:
            logger.error("Failed to send relay message", call_sid=self.call_sid, error=str(e))
        self.messages_sent += 1


async def create_session(
    send_message: Callable[[str], Awaitable[None]],
    *,
    close_caller: Optional[Callable[[], Awaitable[None]]] = None,
    config: Optional[Config] = None,
) -> RelaySession:
    """Create and start a session wired to the configured collaborators."""
    config = config or get_config()

    session = RelaySession(
        send_message,
        close_caller=close_caller,
        config=config,
        pricing_store=get_pricing_store(),
        completion_client=get_completion_client() if config.model_mode == "completion" else None,
        realtime_client=create_realtime_client(config),
        transfer_client=create_transfer_client(config),
        registry=get_registry(),
    )
    await session.start()
    return session
