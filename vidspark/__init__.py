"""
Vidspark workers — short-form video pipeline.

Runs the task-queue handlers that turn a story into narrated scenes,
rendered video and platform uploads.
"""

__version__ = "0.3.0"
