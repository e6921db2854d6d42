"""Glucose polling pipeline: history, alerts, scheduling and per-user sessions."""
