"""Foremost advisor: rate-limited streaming orchestration for the AI explorer and scanner."""
