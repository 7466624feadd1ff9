"""Tests for the client channel adapter over an in-memory WebSocket."""

import json

import pytest

from conftest import FakeWebSocket
from speech_relay.client_channel import ClientChannel
from speech_relay.errors import ConnectionClosed, SendFailed
from speech_relay.messages import StartSpeechToText, StopSpeechToText, TranscriptEvent


@pytest.fixture
def websocket():
    return FakeWebSocket()


@pytest.fixture
def channel(websocket):
    return ClientChannel(websocket, "conn-1")


@pytest.mark.asyncio
async def test_binary_frame_is_audio(websocket, channel):
    websocket.feed(b"\x00\x01\x02\x03")

    assert await channel.next_message() == b"\x00\x01\x02\x03"


@pytest.mark.asyncio
async def test_text_frame_is_command(websocket, channel):
    websocket.feed(json.dumps({"type": "start_speech_to_text", "language": "en-US", "voiceActivityTimeout": 5}))
    websocket.feed('{"type": "stop_speech_to_text"}')

    start = await channel.next_message()
    stop = await channel.next_message()

    assert isinstance(start, StartSpeechToText)
    assert start.voice_activity_timeout == 5
    assert isinstance(stop, StopSpeechToText)


@pytest.mark.asyncio
async def test_malformed_command_skipped(websocket, channel, caplog):
    websocket.feed("{not json")
    websocket.feed(b"\x10\x00")

    assert await channel.next_message() == b"\x10\x00"
    assert channel.malformed_commands == 1
    assert "Malformed command from conn-1" in caplog.text


@pytest.mark.asyncio
async def test_unknown_command_skipped(websocket, channel, caplog):
    websocket.feed('{"type": "ping"}')
    websocket.feed('{"type": "stop_speech_to_text"}')

    assert isinstance(await channel.next_message(), StopSpeechToText)
    assert channel.malformed_commands == 0
    assert "Unknown command type: 'ping'" in caplog.text


@pytest.mark.asyncio
async def test_disconnect(websocket, channel):
    websocket.disconnect()

    with pytest.raises(ConnectionClosed):
        await channel.next_message()


@pytest.mark.asyncio
async def test_send_transcript(websocket, channel):
    await channel.send_transcript(TranscriptEvent(is_final=False, text="hi"))
    await channel.send_transcript(TranscriptEvent(is_final=True, text="Hi there."))

    assert [json.loads(m) for m in websocket.sent] == [
        {"interim_transcript": "hi"},
        {"transcript": "Hi there."},
    ]


@pytest.mark.asyncio
async def test_send_after_close_fails(websocket, channel):
    websocket.closed = True

    with pytest.raises(SendFailed):
        await channel.send_transcript(TranscriptEvent(is_final=True, text="late"))
