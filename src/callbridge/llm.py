"""
OpenAI model clients for utterances the local intents can't answer.

Provides:
- System prompt assembled from the business profile
- Single-shot chat completions (one request per utterance)
- OpenAI Realtime socket in text modality (one socket per call, streamed deltas)
- The canned fallback sentence used whenever the model fails
"""

import asyncio
import json
from typing import Any, AsyncGenerator, Callable, Optional

import structlog
import websockets
from openai import AsyncOpenAI

from src.callbridge.config import BusinessProfile, Config, get_config
from src.callbridge.prompt_utils import resolve_prompt

logger = structlog.get_logger(__name__)

REALTIME_OPEN_TIMEOUT_SECONDS = 10
COMPLETION_MAX_TOKENS = 200

_TEXT_DELTA_EVENTS = ("response.text.delta", "response.output_text.delta")


class UpstreamError(Exception):
    """Raised when the model cannot produce a usable reply."""
    pass


def get_system_prompt(config: Optional[Config] = None) -> str:
    """
    Get the system prompt for the phone agent.

    SYSTEM_PROMPT / SYSTEM_PROMPT_FILE replace the built-in prompt when set.
    """
    if config is None:
        config = get_config()

    override = resolve_prompt(
        config=config,
        inline_text=config.system_prompt,
        file_path=config.system_prompt_file,
    )
    if override:
        return override

    business = config.business
    return f"""You are the phone assistant for {business.name}, a licensed cannabis retailer.

STORE FACTS (the only facts you may state):
- Hours: {business.hours}
- Address: {business.address}
- ID rules: {business.id_policy}
- Delivery: {business.delivery_area}
- Payment: {business.payment}
- Website: {business.domain}

PHONE CALL GUIDELINES:
- This is spoken audio. Keep answers to one to three short sentences.
- No lists, no markdown, no links. Say the website as words, for example "{business.domain.replace('.', ' dot ')}".
- Delivery minimums and fees depend on the ZIP code. If the caller hasn't given one, ask for it.
- Never give medical advice and never make promises about product effects.
- If you don't know, say so and offer to transfer the caller to a team member.
- Never claim to be a human.

RESPONSE STYLE:
- Start responses directly - no "Sure!" or "Of course!"
- Use contractions (I'm, you're, we'll) for natural speech"""


def fallback_reply(profile: BusinessProfile) -> str:
    """Canned sentence for when the model fails: restate the basics instead of going silent."""
    return (
        f"Sorry, I'm having trouble with that one right now. {profile.hours} "
        f"We're located at {profile.address}. {profile.id_policy} "
        f"{profile.delivery_area} You can also say transfer to reach a person."
    )


class CompletionClient:
    """
    Single-shot chat completions.

    One request per unhandled utterance, bounded by OPENAI_TIMEOUT_SECONDS.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            timeout=config.openai_timeout_seconds,
            max_retries=1,
        )

    async def ask(self, system_prompt: str, utterance: str) -> str:
        """
        Get one complete reply.

        Raises:
            UpstreamError: on API errors, timeouts or an empty/malformed body
        """
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": utterance},
                    ],
                    max_tokens=COMPLETION_MAX_TOKENS,
                    temperature=self.config.openai_temperature,
                ),
                timeout=self.config.openai_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError(f"Completion timed out after {self.config.openai_timeout_seconds}s") from e
        except Exception as e:
            raise UpstreamError(f"Completion request failed: {e}") from e

        try:
            text = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise UpstreamError("Malformed completion response") from e

        if not isinstance(text, str) or not text.strip():
            raise UpstreamError("Empty completion response")
        return text.strip()


class RealtimeTextClient:
    """
    OpenAI Realtime socket used in text modality.

    One socket per call. Each utterance is sent as a conversation item followed
    by response.create; text deltas are yielded until response.done.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or get_config()
        self._connect = connect or websockets.connect
        self._ws: Optional[Any] = None
        self._closed: bool = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def open(self, model_id: Optional[str] = None) -> None:
        """
        Connect and configure the session.

        Raises:
            UpstreamError: if the socket can't be opened or configured
        """
        api_key = (self.config.openai_api_key or "").strip()
        model = (model_id or self.config.openai_realtime_model or "").strip()
        if not api_key or not model:
            raise UpstreamError("OpenAI Realtime requires OPENAI_API_KEY and OPENAI_REALTIME_MODEL")

        url = f"{self.config.openai_realtime_url}?model={model}"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        try:
            self._ws = await self._connect(
                url,
                additional_headers=headers,
                open_timeout=REALTIME_OPEN_TIMEOUT_SECONDS,
            )
            self._closed = False
            await self._send(
                {
                    "type": "session.update",
                    "session": {
                        "modalities": ["text"],
                        "instructions": get_system_prompt(self.config),
                        "temperature": max(0.6, self.config.openai_temperature),
                    },
                }
            )
        except UpstreamError:
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise UpstreamError(f"Failed to open OpenAI Realtime socket: {e}") from e

        logger.info("OpenAI Realtime connected", model=model)

    async def _send(self, message: dict) -> None:
        if not self.is_open:
            raise UpstreamError("OpenAI Realtime socket is closed")
        try:
            await self._ws.send(json.dumps(message))
        except Exception as e:
            self._closed = True
            raise UpstreamError(f"OpenAI send failed: {e}") from e

    async def _recv(self) -> dict:
        timeout = self.config.realtime_idle_timeout_seconds
        try:
            raw = await asyncio.wait_for(self._ws.recv(), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("OpenAI Realtime idle timeout; closing socket", timeout_s=timeout)
            await self.close()
            raise UpstreamError(f"No event from OpenAI Realtime within {timeout}s") from e
        except Exception as e:
            self._closed = True
            raise UpstreamError(f"OpenAI Realtime socket closed: {e}") from e

        try:
            event = json.loads(raw)
        except (TypeError, ValueError):
            return {}
        return event if isinstance(event, dict) else {}

    async def stream_reply(self, text: str) -> AsyncGenerator[str, None]:
        """
        Send one utterance and yield reply text deltas as they arrive.

        Raises:
            UpstreamError: on an error event, a closed socket or the idle timeout
        """
        await self._send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": text}],
                },
            }
        )
        await self._send({"type": "response.create", "response": {"modalities": ["text"]}})

        while True:
            event = await self._recv()
            event_type = event.get("type")

            if event_type in _TEXT_DELTA_EVENTS:
                delta = event.get("delta")
                if isinstance(delta, str) and delta:
                    yield delta
                continue

            if event_type == "response.done":
                status = (event.get("response") or {}).get("status")
                if status == "failed":
                    raise UpstreamError("OpenAI Realtime response failed")
                return

            if event_type == "error":
                error = event.get("error") or {}
                message = error.get("message") if isinstance(error, dict) else str(error)
                logger.error("OpenAI Realtime error", details=event)
                raise UpstreamError(f"OpenAI Realtime error: {message}")

    async def wait_closed(self) -> None:
        """Resolve once the socket is gone (closed by either side)."""
        if self._ws is None:
            return
        await self._ws.wait_closed()
        self._closed = True

    async def close(self) -> None:
        if self._closed and self._ws is None:
            return
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug("OpenAI Realtime close failed", error=str(e))


# Singleton instance
_completion_client: Optional[CompletionClient] = None


def get_completion_client() -> Optional[CompletionClient]:
    """Get or create the completion client singleton (None without an API key)."""
    global _completion_client

    config = get_config()
    if not config.model_enabled:
        return None

    if _completion_client is None:
        _completion_client = CompletionClient(config)

    return _completion_client


def create_realtime_client(config: Optional[Config] = None) -> Optional[RealtimeTextClient]:
    """New per-call Realtime client, or None when realtime mode is off or unconfigured."""
    config = config or get_config()
    if config.model_mode != "realtime" or not config.model_enabled:
        return None
    return RealtimeTextClient(config)
