#!/usr/bin/env python3
"""
Relay controller: pairs one client channel with one recognition session

Idle -> Active on start_speech_to_text. While Active an uplink pump forwards
audio to the session and a downlink pump forwards transcripts to the client.
Either pump setting the turn's terminate event tears both down and returns
the controller to Idle.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .client_channel import ClientChannel, ClientMessage
from .errors import BackendUnavailable, ConfigRejected, ConnectionClosed, SendFailed, StreamClosed
from .messages import StartSpeechToText, StopSpeechToText
from .recognition_session import RecognitionSession, encoding_from_name
from .settings import AudioSettings, BackendSettings

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., Awaitable[RecognitionSession]]

# Queued after the last chunk when the client asks to stop.
_END_OF_AUDIO = None


class RelayState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    TERMINATING = "terminating"
    CLOSED = "closed"


@dataclass
class _Turn:
    """Everything owned by one active recognition turn"""
    session: RecognitionSession
    audio_queue: asyncio.Queue
    terminate: asyncio.Event = field(default_factory=asyncio.Event)
    uplink: Optional[asyncio.Task] = None
    downlink: Optional[asyncio.Task] = None
    supervisor: Optional[asyncio.Task] = None
    stopping: bool = False
    client_gone: bool = False
    audio_chunks: int = 0
    transcripts: int = 0


class RelayController:
    """
    Per-connection state machine

    Features:
    - Command loop reading the client channel until it closes
    - Concurrent uplink/downlink pumps per recognition turn
    - Shared terminate signal so a failure on either side stops both
    - Session always released before returning to Idle
    """

    def __init__(
        self,
        channel: ClientChannel,
        backend_settings: BackendSettings,
        audio_settings: Optional[AudioSettings] = None,
        session_factory: SessionFactory = RecognitionSession.open
    ):
        self.channel = channel
        self.backend_settings = backend_settings
        self.audio_settings = audio_settings or AudioSettings()
        self.session_factory = session_factory

        self.state = RelayState.IDLE
        self.sessions_opened = 0
        self._turn: Optional[_Turn] = None

    @property
    def session(self) -> Optional[RecognitionSession]:
        return self._turn.session if self._turn else None

    async def run(self):
        """Process client messages until the connection closes, then tear down"""
        try:
            while True:
                message = await self.channel.next_message()
                await self.handle_message(message)
        except ConnectionClosed as e:
            logger.info(f"Command loop ended: {e}")
        finally:
            await self.shutdown()

    async def handle_message(self, message: ClientMessage):
        if isinstance(message, bytes):
            await self._handle_audio(message)
        elif isinstance(message, StartSpeechToText):
            await self._start_session(message)
        elif isinstance(message, StopSpeechToText):
            await self._stop_session()

    async def _handle_audio(self, chunk: bytes):
        turn = self._turn
        if self.state is not RelayState.ACTIVE or turn is None:
            logger.warning(f"Unexpected audio from {self.channel.connection_id}: "
                           f"no active session, dropping {len(chunk)} bytes")
            return
        if turn.stopping:
            logger.warning(f"Audio stream for {self.channel.connection_id} already closed, "
                           f"dropping {len(chunk)} bytes")
            return
        try:
            turn.audio_queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self._end_stalled_turn(turn)

    def _end_stalled_turn(self, turn: _Turn):
        """The backend stopped taking audio; never block the command loop on it"""
        logger.warning(f"Backend is not keeping up with audio from {self.channel.connection_id} "
                       f"({turn.audio_queue.maxsize} chunks queued), ending the session")
        turn.stopping = True
        turn.terminate.set()

    async def _start_session(self, command: StartSpeechToText):
        if self.state is not RelayState.IDLE:
            logger.warning(f"Session already active for {self.channel.connection_id}, "
                           f"ignoring start_speech_to_text ({self.state.value})")
            return

        logger.info(f"Starting speech-to-text for {self.channel.connection_id} with language: "
                    f"{command.language}, timeout: {command.voice_activity_timeout:.0f} seconds")
        try:
            session = await self.session_factory(
                self.backend_settings,
                command.language,
                sample_rate=self.audio_settings.sample_rate,
                encoding=encoding_from_name(self.audio_settings.encoding),
                voice_activity_timeout=command.voice_activity_timeout,
            )
        except (BackendUnavailable, ConfigRejected) as e:
            logger.error(f"Failed to start recognition for {self.channel.connection_id}: {e}")
            return

        self.sessions_opened += 1
        turn = _Turn(
            session=session,
            audio_queue=asyncio.Queue(maxsize=self.audio_settings.queue_max_chunks)
        )
        turn.uplink = asyncio.create_task(self._uplink_pump(turn))
        turn.downlink = asyncio.create_task(self._downlink_pump(turn))
        turn.supervisor = asyncio.create_task(self._supervise(turn))
        self._turn = turn
        self.state = RelayState.ACTIVE

    async def _stop_session(self):
        turn = self._turn
        if self.state is not RelayState.ACTIVE or turn is None or turn.stopping:
            logger.warning(f"No active session to stop for {self.channel.connection_id}")
            return
        logger.info(f"Stopping speech-to-text for {self.channel.connection_id}")
        turn.stopping = True
        try:
            turn.audio_queue.put_nowait(_END_OF_AUDIO)
        except asyncio.QueueFull:
            self._end_stalled_turn(turn)

    async def _uplink_pump(self, turn: _Turn):
        """Client audio -> session, in arrival order"""
        session = turn.session
        timeout = session.voice_activity_timeout or None
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(turn.audio_queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.info(f"No audio from {self.channel.connection_id} for "
                                f"{timeout:.1f}s, closing the audio stream")
                    await session.half_close()
                    return

                if chunk is _END_OF_AUDIO:
                    await session.half_close()
                    return

                await session.send_audio(chunk)
                turn.audio_chunks += 1
        except StreamClosed as e:
            logger.info(f"Uplink stopped for {self.channel.connection_id}: {e}")
            turn.terminate.set()
        except Exception:
            logger.exception(f"Uplink failed for {self.channel.connection_id}")
            turn.terminate.set()
        finally:
            turn.stopping = True

    async def _downlink_pump(self, turn: _Turn):
        """Session transcripts -> client, in backend order"""
        try:
            async for event in turn.session.receive_results():
                logger.info(f"{event.kind.capitalize()} transcript: {event.text}")
                await self.channel.send_transcript(event)
                turn.transcripts += 1
        except SendFailed as e:
            logger.warning(f"{e}")
            turn.client_gone = True
        except Exception:
            logger.exception(f"Downlink failed for {self.channel.connection_id}")
        finally:
            turn.terminate.set()

    async def _supervise(self, turn: _Turn):
        """Wait for the terminate signal, then release the whole turn"""
        await turn.terminate.wait()
        if self.state is RelayState.ACTIVE:
            self.state = RelayState.TERMINATING

        for task in (turn.uplink, turn.downlink):
            task.cancel()
        await asyncio.gather(turn.uplink, turn.downlink, return_exceptions=True)
        await turn.session.close()

        # Audio that never reached the backend.
        while not turn.audio_queue.empty():
            turn.audio_queue.get_nowait()

        if turn.session.error is not None:
            logger.warning(f"Session for {self.channel.connection_id} ended with error: "
                           f"{type(turn.session.error).__name__}: {turn.session.error}")
        logger.info(f"Session for {self.channel.connection_id} finished. "
                    f"Audio chunks: {turn.audio_chunks}, transcripts: {turn.transcripts}")

        if self._turn is turn:
            self._turn = None
        if self.state is RelayState.TERMINATING:
            self.state = RelayState.IDLE

        if turn.client_gone:
            await self.channel.close()

    async def shutdown(self):
        """Tear down any active turn; the controller is not reusable afterwards"""
        self.state = RelayState.CLOSED
        turn = self._turn
        if turn is not None:
            turn.terminate.set()
            await turn.supervisor
