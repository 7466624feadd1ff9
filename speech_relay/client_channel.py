#!/usr/bin/env python3
"""
Client channel over a WebSocket connection
Text frames carry JSON commands, binary frames carry raw PCM audio,
transcripts go back as JSON text frames.
"""

import logging
from typing import Union

import websockets

from .errors import ConnectionClosed, MalformedCommand, SendFailed, UnknownCommand
from .messages import StartSpeechToText, StopSpeechToText, TranscriptEvent, parse_command

logger = logging.getLogger(__name__)

ClientMessage = Union[StartSpeechToText, StopSpeechToText, bytes]


class ClientChannel:
    """
    Typed view of one client connection

    Args:
        websocket: connection with async ``recv``/``send``/``close``
        connection_id: identifier used in log lines
    """

    def __init__(self, websocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.malformed_commands = 0

    async def next_message(self) -> ClientMessage:
        """
        Wait for the next command or audio chunk

        Malformed and unknown commands are logged and skipped.

        Raises:
            ConnectionClosed: the client went away
        """
        while True:
            try:
                frame = await self.websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                raise ConnectionClosed(f"Connection {self.connection_id} closed: {e}") from e

            if isinstance(frame, bytes):
                return frame

            try:
                return parse_command(frame)
            except UnknownCommand as e:
                logger.warning(f"Ignoring command from {self.connection_id}: {e}")
            except MalformedCommand as e:
                self.malformed_commands += 1
                logger.warning(f"Malformed command from {self.connection_id}: {e}")

    async def send_transcript(self, event: TranscriptEvent):
        """
        Write one transcript event

        Raises:
            SendFailed: the client went away
        """
        try:
            await self.websocket.send(event.to_json())
        except websockets.exceptions.ConnectionClosed as e:
            raise SendFailed(f"Connection {self.connection_id} closed while sending: {e}") from e

    async def close(self, code: int = 1000, reason: str = ""):
        await self.websocket.close(code, reason)
