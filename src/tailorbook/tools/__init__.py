"""Async tool functions returning ``{"success": ...}`` result dicts."""
