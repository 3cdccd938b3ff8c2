"""Credential encryption, prompt-injection detection and request identity."""
