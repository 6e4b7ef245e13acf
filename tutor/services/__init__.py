"""Tutor services."""
from tutor.services.transcript_store import TranscriptStore
from tutor.services.context_extractor import StructuredContextExtractor
from tutor.services.whiteboard_bridge import WhiteboardExportBridge
