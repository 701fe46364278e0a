"""Prompt templates for script, storyboard and illustration generation."""
