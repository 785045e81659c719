"""
Cohort Service - HTTP shell around the cohort engine.

This package provides:
- Typed settings loaded from .env (pydantic-settings)
- Database engine and sessions for the engine's SQLAlchemy models
- FastAPI application exposing query, export, drilldown and materialization
"""
