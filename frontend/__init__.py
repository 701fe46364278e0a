"""Client-side helpers for talking to the task backend."""
