"""Persistent job queue and processing engine for commit workflows."""
