"""Storybook task backend."""
