"""Conversation intake, triage and distribution engine."""
