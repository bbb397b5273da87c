"""devfleet - multi-worktree development environment orchestrator."""
