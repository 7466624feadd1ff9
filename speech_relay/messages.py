"""
Client protocol messages

Inbound control frames are JSON objects tagged by ``type``; outbound frames
are single-key transcript objects.
"""

import json
from dataclasses import dataclass
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import MalformedCommand, UnknownCommand

START_SPEECH_TO_TEXT = "start_speech_to_text"
STOP_SPEECH_TO_TEXT = "stop_speech_to_text"


class StartSpeechToText(BaseModel):
    """Open a recognition session for the given language"""
    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True, frozen=True)

    type: Literal["start_speech_to_text"]
    language: str = Field(min_length=1)
    voice_activity_timeout: float = Field(default=0.0, ge=0, alias="voiceActivityTimeout")


class StopSpeechToText(BaseModel):
    """Half-close the active recognition session"""
    model_config = ConfigDict(strict=True, extra="forbid", frozen=True)

    type: Literal["stop_speech_to_text"]


Command = Annotated[Union[StartSpeechToText, StopSpeechToText], Field(discriminator="type")]

_command_adapter = TypeAdapter(Command)


def parse_command(raw: Union[str, bytes]) -> Union[StartSpeechToText, StopSpeechToText]:
    """
    Parse and validate one control frame

    Raises:
        UnknownCommand: the JSON is an object whose ``type`` is not recognised
        MalformedCommand: anything else that does not validate
    """
    try:
        return _command_adapter.validate_json(raw)
    except ValidationError as e:
        for error in e.errors():
            if error["type"] == "union_tag_invalid":
                raise UnknownCommand(error["ctx"]["tag"]) from e
        raise MalformedCommand(f"Invalid command: {e.error_count()} validation error(s): "
                               f"{e.errors()[0]['msg']}") from e


@dataclass(frozen=True)
class TranscriptEvent:
    """One recognition result on its way to the client"""
    is_final: bool
    text: str

    @property
    def kind(self) -> str:
        return "final" if self.is_final else "interim"

    def to_json(self) -> str:
        key = "transcript" if self.is_final else "interim_transcript"
        return json.dumps({key: self.text})
