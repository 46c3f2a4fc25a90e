"""minions: turn a task into a validated pull request, and learn from failures."""

__version__ = "0.1.0"
