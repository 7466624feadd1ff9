#!/usr/bin/env python3
"""
Streaming Recognition Session with Riva ASR
Wraps one bidirectional StreamingRecognize call: configuration and audio go
out, interim/final results come back, concurrently.
"""

import asyncio
import enum
import logging
from typing import AsyncIterator, Optional

import grpc
from riva.client.proto import riva_asr_pb2, riva_asr_pb2_grpc, riva_audio_pb2

from .errors import BackendUnavailable, ConfigRejected, StreamClosed
from .messages import TranscriptEvent
from .settings import BackendSettings

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    OPEN = "open"
    HALF_CLOSED = "half_closed"
    CLOSED = "closed"


def create_channel(settings: BackendSettings) -> grpc.aio.Channel:
    """Create an asyncio gRPC channel to the Riva server"""
    if settings.ssl:
        root_certificates = None
        if settings.ssl_cert:
            with open(settings.ssl_cert, 'rb') as f:
                root_certificates = f.read()
        creds = grpc.ssl_channel_credentials(root_certificates)
        return grpc.aio.secure_channel(settings.target(), creds)
    return grpc.aio.insecure_channel(settings.target())


def build_config_request(
    language_code: str,
    sample_rate: int,
    encoding: int,
    max_alternatives: int = 1,
    enable_punctuation: bool = True
) -> riva_asr_pb2.StreamingRecognizeRequest:
    """
    Build the first message of a stream

    Riva streams are continuous (no single-utterance mode), interim results
    are always requested.
    """
    config = riva_asr_pb2.RecognitionConfig(
        encoding=encoding,
        sample_rate_hertz=sample_rate,
        language_code=language_code,
        max_alternatives=max_alternatives,
        enable_automatic_punctuation=enable_punctuation,
        audio_channel_count=1,
    )
    streaming_config = riva_asr_pb2.StreamingRecognitionConfig(
        config=config,
        interim_results=True,
    )
    return riva_asr_pb2.StreamingRecognizeRequest(streaming_config=streaming_config)


def encoding_from_name(name: str) -> int:
    """Map an encoding name such as LINEAR_PCM to the Riva enum value"""
    try:
        return riva_audio_pb2.AudioEncoding.Value(name.upper())
    except ValueError:
        raise ValueError(f"Unsupported audio encoding: {name}") from None


class RecognitionSession:
    """
    One streaming recognition turn against the backend

    Features:
    - Configuration sent as soon as the stream is opened
    - Audio writes and result reads usable from separate tasks
    - Half-close independent of resource release
    - Channel and call released on every exit path (async context manager)
    """

    def __init__(
        self,
        channel: grpc.aio.Channel,
        call,
        language_code: str,
        voice_activity_timeout: float = 0.0
    ):
        self.language_code = language_code
        self.voice_activity_timeout = voice_activity_timeout
        self.state = SessionState.OPEN
        self.error: Optional[Exception] = None

        self._channel = channel
        self._call = call
        self._results_received = 0
        self._write_failed = False

    @classmethod
    async def open(
        cls,
        settings: BackendSettings,
        language_code: str,
        sample_rate: int = 16000,
        encoding: int = riva_audio_pb2.LINEAR_PCM,
        voice_activity_timeout: float = 0.0
    ) -> "RecognitionSession":
        """
        Establish the streaming RPC and send the configuration message

        Raises:
            BackendUnavailable: the channel did not become ready in time
            ConfigRejected: the backend refused the configuration message
        """
        channel = create_channel(settings)
        try:
            await asyncio.wait_for(
                channel.channel_ready(),
                timeout=settings.connect_timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            await channel.close()
            raise BackendUnavailable(f"Riva server at {settings.target()} is not reachable") from None
        except BaseException:
            await channel.close()
            raise

        stub = riva_asr_pb2_grpc.RivaSpeechRecognitionStub(channel)
        call = stub.StreamingRecognize()
        session = cls(channel, call, language_code, voice_activity_timeout)

        request = build_config_request(
            language_code,
            sample_rate,
            encoding,
            max_alternatives=settings.max_alternatives,
            enable_punctuation=settings.enable_automatic_punctuation,
        )
        try:
            await call.write(request)
        except (grpc.aio.AioRpcError, asyncio.InvalidStateError) as e:
            await session.close()
            raise ConfigRejected(f"Riva rejected the streaming config: {e}") from e
        except BaseException:
            await session.close()
            raise

        logger.info(f"Recognition session opened on {settings.target()} "
                    f"(language={language_code}, {sample_rate}Hz)")
        return session

    async def send_audio(self, chunk: bytes):
        """
        Forward one audio chunk

        Raises:
            StreamClosed: the session was closed locally or by the backend
        """
        if self.state is not SessionState.OPEN:
            raise StreamClosed(f"Session is {self.state.value}")
        if self._call.done():
            self.state = SessionState.HALF_CLOSED
            raise StreamClosed("Backend stream already ended")
        try:
            await self._call.write(riva_asr_pb2.StreamingRecognizeRequest(audio_content=chunk))
        except (grpc.aio.AioRpcError, asyncio.InvalidStateError) as e:
            self.state = SessionState.HALF_CLOSED
            self._write_failed = True
            raise StreamClosed(f"Backend stream closed: {e}") from e

    async def receive_results(self) -> AsyncIterator[TranscriptEvent]:
        """
        Yield transcript events in backend order until the stream ends

        A terminal backend error ends the iteration; it is kept on
        ``self.error``.
        """
        while True:
            try:
                response = await self._call.read()
            except grpc.aio.AioRpcError as e:
                if self._lost_to_write_race(e):
                    logger.info(f"Riva stream ended while audio was in flight, "
                                f"after {self._results_received} results")
                    return
                self.error = self._classify(e)
                logger.error(f"Riva stream error: {e.code().name}: {e.details()}")
                return

            if response is grpc.aio.EOF:
                logger.info(f"Riva stream ended after {self._results_received} results")
                return

            for result in response.results:
                if not result.alternatives:
                    continue
                self._results_received += 1
                yield TranscriptEvent(
                    is_final=result.is_final,
                    text=result.alternatives[0].transcript
                )

    def _lost_to_write_race(self, error: grpc.aio.AioRpcError) -> bool:
        """
        A write that lands after the backend finished the call fails locally,
        and grpc then reports INTERNAL for the whole call in place of the
        backend's own status. That end is the backend closing the stream.
        """
        return self._write_failed and error.code() == grpc.StatusCode.INTERNAL

    def _classify(self, error: grpc.aio.AioRpcError) -> Exception:
        if error.code() == grpc.StatusCode.INVALID_ARGUMENT and self._results_received == 0:
            return ConfigRejected(error.details())
        return StreamClosed(f"{error.code().name}: {error.details()}")

    async def half_close(self):
        """Signal that no more audio will be sent; results keep flowing"""
        if self.state is not SessionState.OPEN:
            return
        self.state = SessionState.HALF_CLOSED
        try:
            await self._call.done_writing()
        except (grpc.aio.AioRpcError, asyncio.InvalidStateError) as e:
            logger.debug(f"Half-close on finished stream: {e}")

    async def close(self):
        """Release the call and its channel"""
        if self.state is SessionState.CLOSED:
            return
        await self.half_close()
        self.state = SessionState.CLOSED
        if not self._call.done():
            self._call.cancel()
        await self._channel.close()
        logger.info("Recognition session closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
