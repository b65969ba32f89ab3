"""
Service layer for the conversational session

This module provides services for:
- Sentence segmentation and ordered sentence-level synthesis
- Speech-to-text (batch transcode + transcribe, realtime commit gating + VAD)
- Retrieval over a local knowledge directory
- Session orchestration for the chat WebSocket
"""

from parley.services.commit_gate import CommitGate
from parley.services.sentence_chunker import SentenceSegmenter
from parley.services.session_memory import MemoryRole, SessionMemory
from parley.services.synthesis_dispatcher import ReorderBuffer, Sentence, SynthesisDispatcher
from parley.services.transcript_assembler import TranscriptAssembler
from parley.services.voice_activity_detector import EndOfTurnDetector, VADConfig

__all__ = [
    "CommitGate",
    "EndOfTurnDetector",
    "MemoryRole",
    "ReorderBuffer",
    "Sentence",
    "SentenceSegmenter",
    "SessionMemory",
    "SynthesisDispatcher",
    "TranscriptAssembler",
    "VADConfig",
]
