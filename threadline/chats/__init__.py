"""Persistent chats and messages."""
