"""Ally realtime presence and delivery backend."""
