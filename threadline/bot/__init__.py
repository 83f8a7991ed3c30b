"""Telegram front-end for the chat engine."""
