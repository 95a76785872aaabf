"""jobchat - real-time chat pipeline for the employment service."""

__version__ = "0.1.0"
