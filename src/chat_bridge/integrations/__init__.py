"""Seams to the chat transport and the agent backend."""
