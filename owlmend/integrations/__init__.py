"""Integrations with external services (LLM providers)."""
