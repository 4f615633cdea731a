"""Credential codec and session lifecycle."""
