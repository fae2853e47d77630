"""Level Import Service - converts MIDI and audio uploads into playable level charts."""

__version__ = "1.0.0"
