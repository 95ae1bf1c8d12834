"""Coordinator for teams of CLI agent workers running in tmux panes."""

__version__ = "0.1.0"
