"""aichat-context: persistent, token-budgeted chat context cache."""

__version__ = "0.1.0"
