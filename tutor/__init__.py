"""Tutor module: chat, voice, practice and whiteboard."""
