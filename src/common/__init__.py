"""
Common utilities for GRASP.

Modules:
- config: environment-driven settings and logging setup
- timers: repeating timer and debouncer over a pluggable scheduler
- ollama: Ollama `/api/generate` client with retry
- questions: multiple-choice prompt building and response parsing
"""

__all__ = [
    "config",
    "timers",
    "ollama",
    "questions",
]
