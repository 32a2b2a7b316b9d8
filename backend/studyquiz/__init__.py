"""Study quiz backend: courses, PDF uploads, generated questions and gamification.

This package exposes the service, repository and model modules used by
the FastAPI application in `main.py`. Individual modules contain the
concrete implementations and documentation.
"""
