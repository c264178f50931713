"""Chorus — multi-character dialogue orchestration.

Turns one user message into an animated scene in which several AI characters
answer, interrupt and react to each other, and keeps the characters alive
between messages with idle banter and micro-animations.
"""

__version__ = "0.1.0"
