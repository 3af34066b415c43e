# exam_portal/__init__.py
"""Timed computer-based test (CBT) backend: attempts, autosave, countdown and scoring."""

__version__ = "1.0.0"
