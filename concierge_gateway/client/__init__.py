"""Conversational agent client: session, dispatch and streaming."""
