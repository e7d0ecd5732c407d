"""VoicePilot: voice-driven assistant with on-device speech recognition and function calling."""

__version__ = "1.0"
