"""Consumption of streamed model output for one model request."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from loguru import logger

from termloop.cancellation import CancellationToken
from termloop.events import (
    AlertEvent,
    EventSink,
    SayEvent,
    SubToolDeltaEvent,
    SubToolFinishedEvent,
    SubToolStartedEvent,
)
from termloop.messages import Message, new_message_id
from termloop.model import ChatModel, ModelChunk
from termloop.reasoning import ReasoningExtractor
from termloop.retry import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAYS, invoke_with_retry

REASONING_BANNER_TITLE = "Reasoning..."


class StreamResponseHandler:
    """Streams one assistant reply, splitting reasoning from visible text.

    If a stream dies after visible text was produced, the partial reply is
    kept in ``aborted_message`` for the recovery path.
    """

    def __init__(
        self,
        *,
        session_id: str,
        sink: EventSink,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    ) -> None:
        self._session_id = session_id
        self._sink = sink
        self._max_retries = max_retries
        self._retry_delays = tuple(retry_delays)
        self.aborted_message: Message | None = None

    async def request(self, model: ChatModel, messages: Sequence[Message], *, token: CancellationToken) -> Message:
        message_id = new_message_id()
        self.aborted_message = None

        def on_retry(attempt: int, max_retries: int) -> None:
            self._sink.send_event(
                self._session_id,
                AlertEvent(content=f"Retrying ({attempt}/{max_retries})...", message_id=message_id),
            )

        async def attempt(_: int) -> Message:
            return await self._consume(model, messages, message_id, token)

        message = await invoke_with_retry(
            attempt,
            token=token,
            max_retries=self._max_retries,
            delays=self._retry_delays,
            on_retry=on_retry,
            label=f"model {model.name}",
        )
        self.aborted_message = None
        return message

    async def _consume(
        self,
        model: ChatModel,
        messages: Sequence[Message],
        message_id: str,
        token: CancellationToken,
    ) -> Message:
        self.aborted_message = None
        extractor = ReasoningExtractor()
        visible: list[str] = []
        banner_open = False
        response = ModelChunk()

        def close_banner() -> None:
            nonlocal banner_open
            if banner_open:
                self._sink.send_event(self._session_id, SubToolFinishedEvent(message_id=message_id))
                banner_open = False

        try:
            async for chunk in token.iterate(model.stream(messages, token=token)):
                response = response + chunk
                delta = extractor.process(chunk.content, chunk.reasoning)
                if delta.reasoning:
                    if not banner_open:
                        self._sink.send_event(
                            self._session_id,
                            SubToolStartedEvent(title=REASONING_BANNER_TITLE, message_id=message_id),
                        )
                        banner_open = True
                    self._sink.send_event(
                        self._session_id,
                        SubToolDeltaEvent(output_delta=delta.reasoning, message_id=message_id),
                    )
                if delta.content:
                    close_banner()
                    visible.append(delta.content)
                    self._sink.send_event(self._session_id, SayEvent(content=delta.content, message_id=message_id))
        except (Exception, asyncio.CancelledError) as exc:
            close_banner()
            self._capture_partial(visible, extractor, message_id, model.name)
            logger.info("stream.interrupted model={} error={!r}", model.name, exc)
            raise

        tail = extractor.flush()
        close_banner()
        if tail:
            visible.append(tail)
            self._sink.send_event(self._session_id, SayEvent(content=tail, message_id=message_id))

        return Message.assistant(
            "".join(visible),
            id=message_id,
            tool_calls=response.tool_calls,
            tool_call_chunks=response.tool_call_chunks,
            reasoning_content=extractor.reasoning_content or None,
            usage=response.usage,
            metadata={"model_name": response.model_name or model.name},
        )

    def _capture_partial(
        self,
        visible: list[str],
        extractor: ReasoningExtractor,
        message_id: str,
        model_name: str,
    ) -> None:
        text = "".join(visible) + extractor.flush()
        if not text:
            return
        self.aborted_message = Message.assistant(
            text,
            id=message_id,
            aborted=True,
            reasoning_content=extractor.reasoning_content or None,
            metadata={"model_name": model_name},
        )
