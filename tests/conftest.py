"""
Shared fixtures: an in-process Riva servicer and an in-memory WebSocket
"""

import asyncio
from typing import Dict, List, Optional, Tuple

import grpc
import pytest_asyncio
import websockets
from riva.client.proto import riva_asr_pb2, riva_asr_pb2_grpc

from speech_relay.settings import AudioSettings, BackendSettings, ServerSettings, Settings, WebSocketSettings

REJECTED_LANGUAGE = "xx-XX"


def make_response(*results: Tuple[bool, str]) -> riva_asr_pb2.StreamingRecognizeResponse:
    """Build a response holding one result per (is_final, transcript) pair"""
    return riva_asr_pb2.StreamingRecognizeResponse(results=[
        riva_asr_pb2.StreamingRecognitionResult(
            is_final=is_final,
            alternatives=[riva_asr_pb2.SpeechRecognitionAlternative(transcript=text)],
        )
        for is_final, text in results
    ])


class FakeRecognizer(riva_asr_pb2_grpc.RivaSpeechRecognitionServicer):
    """
    Scripted streaming recognizer

    ``script`` maps the 1-based index of a received audio chunk to the
    responses sent right after it; ``end_after`` ends the stream from the
    server side once that many chunks have arrived.
    """

    def __init__(self):
        self.script: Dict[int, List[riva_asr_pb2.StreamingRecognizeResponse]] = {}
        self.end_after: Optional[int] = None
        self.calls = 0
        self.configs: List[riva_asr_pb2.StreamingRecognitionConfig] = []
        self.audio: List[bytes] = []
        self.closed_streams = 0
        self.stream_closed = asyncio.Event()

    async def StreamingRecognize(self, request_iterator, context):
        self.calls += 1
        try:
            async for request in request_iterator:
                if request.HasField("streaming_config"):
                    self.configs.append(request.streaming_config)
                    if request.streaming_config.config.language_code == REJECTED_LANGUAGE:
                        await context.abort(
                            grpc.StatusCode.INVALID_ARGUMENT,
                            "Unavailable model requested given these parameters"
                        )
                    continue

                self.audio.append(request.audio_content)
                for response in self.script.get(len(self.audio), []):
                    yield response
                if self.end_after is not None and len(self.audio) >= self.end_after:
                    return
        finally:
            self.closed_streams += 1
            self.stream_closed.set()


@pytest_asyncio.fixture
async def recognizer():
    """Running fake Riva server; yields (servicer, BackendSettings)"""
    servicer = FakeRecognizer()
    server = grpc.aio.server()
    riva_asr_pb2_grpc.add_RivaSpeechRecognitionServicer_to_server(servicer, server)
    port = server.add_insecure_port("127.0.0.1:0")
    await server.start()
    try:
        yield servicer, BackendSettings(host="127.0.0.1", port=port, connect_timeout_ms=2000)
    finally:
        await server.stop(None)


@pytest_asyncio.fixture
async def settings(recognizer):
    _, backend = recognizer
    return Settings(
        backend=backend,
        server=ServerSettings(host="127.0.0.1", port=0),
        websocket=WebSocketSettings(),
        audio=AudioSettings(),
    )


class FakeWebSocket:
    """In-memory stand-in for a websockets ServerConnection"""

    _CLOSE = object()

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.closed = False
        self.close_code: Optional[int] = None

    def feed(self, frame):
        self.incoming.put_nowait(frame)

    def disconnect(self):
        self.incoming.put_nowait(self._CLOSE)

    async def recv(self):
        if self.closed:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        frame = await self.incoming.get()
        if frame is self._CLOSE:
            self.closed = True
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        return frame

    async def send(self, message):
        if self.closed:
            raise websockets.exceptions.ConnectionClosedError(None, None)
        self.sent.append(message)

    async def close(self, code=1000, reason=""):
        self.close_code = code
        self.disconnect()


async def wait_until(predicate, timeout: float = 3.0):
    """Poll until predicate() is true or fail after timeout seconds"""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout=timeout)
