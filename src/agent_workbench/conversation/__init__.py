"""Conversation ownership and the one-active-session-per-workspace guard."""
