#!/usr/bin/env python3
"""
Offline transcription of a local audio file through one recognition session

Raw PCM files are streamed as-is; WAV files are streamed frame-wise so the
header never reaches the backend.
"""

import argparse
import asyncio
import logging
import sys
import wave
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .dispatcher import configure_logging
from .errors import RelayError, StreamClosed
from .messages import TranscriptEvent
from .recognition_session import RecognitionSession, encoding_from_name
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


def iter_audio_chunks(path: Path, chunk_size: int) -> Iterator[bytes]:
    """Yield fixed-size chunks of PCM audio from a raw or WAV file"""
    if path.suffix.lower() == ".wav":
        with wave.open(str(path), 'rb') as wav_file:
            frames_per_chunk = max(1, chunk_size // wav_file.getsampwidth())
            while True:
                frames = wav_file.readframes(frames_per_chunk)
                if not frames:
                    break
                yield frames
    else:
        with open(path, 'rb') as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk


async def _feed(session: RecognitionSession, chunks: Iterator[bytes]) -> int:
    sent = 0
    try:
        for chunk in chunks:
            await session.send_audio(chunk)
            sent += 1
    except StreamClosed as e:
        # The backend may finish before the file does; results still drain.
        logger.info(f"Backend closed the stream after {sent} chunks: {e}")
    finally:
        await session.half_close()
    return sent


async def transcribe_file(
    path: Path,
    settings: Settings,
    language: str,
    chunk_size: Optional[int] = None,
    on_event: Optional[Callable[[TranscriptEvent], None]] = None
) -> List[str]:
    """
    Stream a file to the backend and collect final transcripts

    Args:
        path: raw 16-bit PCM or WAV file
        settings: backend and audio settings
        language: BCP-47 language code
        chunk_size: bytes per audio message (defaults to the configured size)
        on_event: called for every interim and final event

    Returns:
        Final transcripts in backend order
    """
    chunk_size = chunk_size or settings.audio.chunk_size_bytes
    session = await RecognitionSession.open(
        settings.backend,
        language,
        sample_rate=settings.audio.sample_rate,
        encoding=encoding_from_name(settings.audio.encoding),
    )
    finals = []
    async with session:
        feeder = asyncio.create_task(_feed(session, iter_audio_chunks(path, chunk_size)))
        try:
            async for event in session.receive_results():
                if on_event:
                    on_event(event)
                if event.is_final:
                    finals.append(event.text)
        finally:
            if not feeder.done():
                feeder.cancel()
            await asyncio.gather(feeder, return_exceptions=True)

        if session.error is not None:
            raise session.error
    return finals


def _print_event(event: TranscriptEvent):
    if event.is_final:
        print(f"Final transcript: {event.text}")
    else:
        print(f"Interim transcript: {event.text}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Transcribe a local audio file with Riva")
    parser.add_argument(
        "file",
        type=Path,
        help="Raw 16-bit mono PCM or WAV file"
    )
    parser.add_argument(
        "--language",
        default="en-US",
        help="Language code"
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Bytes per audio message"
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.observability.level)

    if not args.file.exists():
        parser.error(f"Audio file not found: {args.file}")

    try:
        asyncio.run(transcribe_file(
            args.file, settings, args.language,
            chunk_size=args.chunk_size, on_event=_print_event
        ))
    except RelayError as e:
        logger.error(f"Transcription failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
