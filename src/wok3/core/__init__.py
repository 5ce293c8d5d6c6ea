"""Core engine: port virtualization, supervision, worktree lifecycle and activity."""
