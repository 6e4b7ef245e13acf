"""Shared infrastructure: models, repositories, external service clients."""
