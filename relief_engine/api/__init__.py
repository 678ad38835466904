"""
HTTP surface for the relief dashboard.

Modules:
  app     — create_app(): FastAPI routes over an Orchestrator.
  schemas — camelCase wire models.
"""
