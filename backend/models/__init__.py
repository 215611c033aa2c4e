"""
Models package

- models.domain: storage-agnostic dataclasses used by engines and repositories
- models.api: Pydantic request/response schemas used by the routers
"""
