"""
Real-time speech-to-text relay between WebSocket clients and Riva ASR
"""

from .client_channel import ClientChannel
from .dispatcher import ConnectionDispatcher
from .messages import StartSpeechToText, StopSpeechToText, TranscriptEvent, parse_command
from .recognition_session import RecognitionSession
from .relay_controller import RelayController, RelayState
from .settings import Settings, get_settings

__all__ = [
    'ClientChannel',
    'ConnectionDispatcher',
    'RecognitionSession',
    'RelayController',
    'RelayState',
    'Settings',
    'StartSpeechToText',
    'StopSpeechToText',
    'TranscriptEvent',
    'get_settings',
    'parse_command',
]
