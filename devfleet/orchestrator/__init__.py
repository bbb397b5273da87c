"""Worktree orchestration: allocation table, databases, safe start."""
