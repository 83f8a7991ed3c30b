"""Threadline: chat engine with rolling summaries and tool orchestration."""
