"""
Feature modules for FitSync.

Each feature is a self-contained module with:
- models.py - SQLAlchemy models
- repository.py - Data access
- service.py / sync/ - Business logic (optional)
"""
