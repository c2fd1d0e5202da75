"""
timp-relay — Schedule extraction relay between browser extensions and dashboards.

Modules:
  core/   — connection registry, envelope protocol, message router
  store/  — overwrite-by-date schedule persistence (SQL + in-memory)
  api/    — FastAPI WebSocket gateway + read-only REST projections
  config/ — Settings, env loading, YAML config
"""

__version__ = "1.0.0"
__author__ = "timp"
