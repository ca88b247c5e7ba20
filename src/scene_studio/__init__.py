"""Generation orchestration for script-to-video projects."""

__version__ = "0.1.0"
