"""Streaming relay and client for the travel concierge agent."""
