"""Durable transport between a publisher pipeline and its consumers (buffered mode)."""
